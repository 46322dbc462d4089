"""Queue data model: tasks, schedules, triggers, workflows and executor state.

All records are plain dataclasses with explicit ``to_dict``/``from_dict``
so the stores can persist them as JSON. Timestamps are timezone-aware UTC.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Task statuses
PENDING = "pending"
RUNNING = "running"
PAUSED = "paused"
WAITING_INPUT = "waiting_input"
WAITING_DEPENDENCY = "waiting_dependency"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TASK_STATUSES = {PENDING, RUNNING, PAUSED, WAITING_INPUT, WAITING_DEPENDENCY, COMPLETED, FAILED, CANCELLED}
TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELLED}

# Informational only; any tag is accepted as long as a runner is registered for it.
TASK_TYPES = {"research", "action", "analysis", "synthesis", "fetch", "transform", "validate", "notify"}

EXECUTION_MODES = {"sequential", "parallel"}

TRIGGER_TYPES = {"email", "sms", "prompt_keyword", "webhook", "manual"}

EXECUTOR_STATUSES = {"running", "stopped", "paused"}

# Failure classes recorded in Task.error_code
ERROR_RUNNER = "runner_error"
ERROR_TIMEOUT = "timeout"
ERROR_DEPENDENCY = "dependency_failed"
ERROR_NO_RUNNER = "no_runner"
ERROR_CONDITION = "condition_error"


@dataclass
class Task:
    """One unit of schedulable work."""
    task_id: str
    title: str
    task_type: str
    description: str = ""
    parent_id: Optional[str] = None
    chat_id: Optional[str] = None

    priority: int = 0
    status: str = PENDING

    execution_mode: str = "sequential"
    dependencies: List[str] = field(default_factory=list)
    condition: Optional[str] = None
    condition_result: Optional[bool] = None

    waiting_for_input: bool = False
    input_prompt: Optional[str] = None
    operator_input: Optional[str] = None

    input: Any = None
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    retry_count: int = 0
    max_retries: int = 3
    not_before: Optional[datetime] = None
    # Set by each claim; outcomes of an older dispatch no longer match
    claim_token: Optional[str] = None

    # Provenance
    workflow_id: Optional[str] = None
    workflow_run_id: Optional[str] = None
    schedule_id: Optional[str] = None
    trigger_id: Optional[str] = None

    timeout_seconds: Optional[int] = None
    max_parallel: Optional[int] = None

    estimated_duration: Optional[int] = None
    actual_duration: Optional[int] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def group_key(self) -> Optional[str]:
        """Sibling group used for sequential/parallel gating."""
        if self.workflow_run_id:
            return f"run:{self.workflow_run_id}"
        if self.parent_id:
            return f"parent:{self.parent_id}"
        return None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "task_type": self.task_type,
            "description": self.description,
            "parent_id": self.parent_id,
            "chat_id": self.chat_id,
            "priority": self.priority,
            "status": self.status,
            "execution_mode": self.execution_mode,
            "dependencies": list(self.dependencies),
            "condition": self.condition,
            "condition_result": self.condition_result,
            "waiting_for_input": self.waiting_for_input,
            "input_prompt": self.input_prompt,
            "operator_input": self.operator_input,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "not_before": _iso(self.not_before),
            "claim_token": self.claim_token,
            "workflow_id": self.workflow_id,
            "workflow_run_id": self.workflow_run_id,
            "schedule_id": self.schedule_id,
            "trigger_id": self.trigger_id,
            "timeout_seconds": self.timeout_seconds,
            "max_parallel": self.max_parallel,
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        return cls(
            task_id=d["task_id"],
            title=d["title"],
            task_type=d["task_type"],
            description=d.get("description") or "",
            parent_id=d.get("parent_id"),
            chat_id=d.get("chat_id"),
            priority=int(d.get("priority", 0)),
            status=d.get("status", PENDING),
            execution_mode=d.get("execution_mode", "sequential"),
            dependencies=list(d.get("dependencies") or []),
            condition=d.get("condition"),
            condition_result=d.get("condition_result"),
            waiting_for_input=d.get("waiting_for_input", False),
            input_prompt=d.get("input_prompt"),
            operator_input=d.get("operator_input"),
            input=d.get("input"),
            output=d.get("output"),
            error=d.get("error"),
            error_code=d.get("error_code"),
            retry_count=int(d.get("retry_count", 0)),
            max_retries=int(d.get("max_retries", 3)),
            not_before=_dt(d.get("not_before")),
            claim_token=d.get("claim_token"),
            workflow_id=d.get("workflow_id"),
            workflow_run_id=d.get("workflow_run_id"),
            schedule_id=d.get("schedule_id"),
            trigger_id=d.get("trigger_id"),
            timeout_seconds=d.get("timeout_seconds"),
            max_parallel=d.get("max_parallel"),
            estimated_duration=d.get("estimated_duration"),
            actual_duration=d.get("actual_duration"),
            created_at=_dt(d.get("created_at")) or _now(),
            updated_at=_dt(d.get("updated_at")) or _now(),
            started_at=_dt(d.get("started_at")),
            completed_at=_dt(d.get("completed_at")),
        )


@dataclass
class Schedule:
    """A cron-driven task factory."""
    schedule_id: str
    name: str
    cron_expression: str
    task_template: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    timezone: str = "UTC"
    workflow_id: Optional[str] = None
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    run_count: int = 0
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    max_consecutive_failures: int = 3
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "schedule_id": self.schedule_id,
            "name": self.name,
            "description": self.description,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "task_template": self.task_template,
            "workflow_id": self.workflow_id,
            "enabled": self.enabled,
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "run_count": self.run_count,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Schedule:
        return cls(
            schedule_id=d["schedule_id"],
            name=d["name"],
            cron_expression=d["cron_expression"],
            task_template=d.get("task_template") or {},
            description=d.get("description") or "",
            timezone=d.get("timezone", "UTC"),
            workflow_id=d.get("workflow_id"),
            enabled=d.get("enabled", True),
            last_run_at=_dt(d.get("last_run_at")),
            next_run_at=_dt(d.get("next_run_at")),
            run_count=int(d.get("run_count", 0)),
            last_error=d.get("last_error"),
            consecutive_failures=int(d.get("consecutive_failures", 0)),
            max_consecutive_failures=int(d.get("max_consecutive_failures", 3)),
            created_at=_dt(d.get("created_at")) or _now(),
            updated_at=_dt(d.get("updated_at")) or _now(),
        )


@dataclass
class Trigger:
    """An event-driven task factory."""
    trigger_id: str
    name: str
    trigger_type: str
    description: str = ""
    pattern: Optional[str] = None
    sender_filter: Optional[str] = None
    subject_filter: Optional[str] = None
    task_template: Optional[Dict[str, Any]] = None
    workflow_id: Optional[str] = None
    priority: int = 5
    webhook_secret: Optional[str] = None
    enabled: bool = True
    last_triggered_at: Optional[datetime] = None
    trigger_count: int = 0
    # idempotency key -> task id, oldest first
    recent_deliveries: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self, include_secret: bool = True) -> dict:
        data = {
            "trigger_id": self.trigger_id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type,
            "pattern": self.pattern,
            "sender_filter": self.sender_filter,
            "subject_filter": self.subject_filter,
            "task_template": self.task_template,
            "workflow_id": self.workflow_id,
            "priority": self.priority,
            "webhook_secret": self.webhook_secret,
            "enabled": self.enabled,
            "last_triggered_at": _iso(self.last_triggered_at),
            "trigger_count": self.trigger_count,
            "recent_deliveries": dict(self.recent_deliveries),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if not include_secret:
            data["webhook_secret"] = "***" if self.webhook_secret else None
        return data

    @classmethod
    def from_dict(cls, d: dict) -> Trigger:
        return cls(
            trigger_id=d["trigger_id"],
            name=d["name"],
            trigger_type=d["trigger_type"],
            description=d.get("description") or "",
            pattern=d.get("pattern"),
            sender_filter=d.get("sender_filter"),
            subject_filter=d.get("subject_filter"),
            task_template=d.get("task_template"),
            workflow_id=d.get("workflow_id"),
            priority=int(d.get("priority", 5)),
            webhook_secret=d.get("webhook_secret"),
            enabled=d.get("enabled", True),
            last_triggered_at=_dt(d.get("last_triggered_at")),
            trigger_count=int(d.get("trigger_count", 0)),
            recent_deliveries=dict(d.get("recent_deliveries") or {}),
            created_at=_dt(d.get("created_at")) or _now(),
            updated_at=_dt(d.get("updated_at")) or _now(),
        )


@dataclass
class Workflow:
    """A named, versioned list of step templates."""
    workflow_id: str
    name: str
    steps: List[Dict[str, Any]] = field(default_factory=list)
    description: str = ""
    default_execution_mode: str = "sequential"
    max_parallel_tasks: int = 3
    timeout_seconds: int = 3600
    enabled: bool = True
    version: int = 1
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "description": self.description,
            "steps": self.steps,
            "default_execution_mode": self.default_execution_mode,
            "max_parallel_tasks": self.max_parallel_tasks,
            "timeout_seconds": self.timeout_seconds,
            "enabled": self.enabled,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Workflow:
        return cls(
            workflow_id=d["workflow_id"],
            name=d["name"],
            steps=list(d.get("steps") or []),
            description=d.get("description") or "",
            default_execution_mode=d.get("default_execution_mode", "sequential"),
            max_parallel_tasks=int(d.get("max_parallel_tasks", 3)),
            timeout_seconds=int(d.get("timeout_seconds", 3600)),
            enabled=d.get("enabled", True),
            version=int(d.get("version", 1)),
            created_at=_dt(d.get("created_at")) or _now(),
            updated_at=_dt(d.get("updated_at")) or _now(),
        )


@dataclass
class ExecutorState:
    """Singleton record describing the executor control loop."""
    status: str = "stopped"
    current_task_id: Optional[str] = None
    running_task_ids: List[str] = field(default_factory=list)
    tasks_processed: int = 0
    tasks_failed: int = 0
    last_activity_at: Optional[datetime] = None
    max_parallel_tasks: int = 3
    poll_interval_ms: int = 5000
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "current_task_id": self.current_task_id,
            "running_task_ids": list(self.running_task_ids),
            "tasks_processed": self.tasks_processed,
            "tasks_failed": self.tasks_failed,
            "last_activity_at": _iso(self.last_activity_at),
            "max_parallel_tasks": self.max_parallel_tasks,
            "poll_interval_ms": self.poll_interval_ms,
            "started_at": _iso(self.started_at),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> ExecutorState:
        return cls(
            status=d.get("status", "stopped"),
            current_task_id=d.get("current_task_id"),
            running_task_ids=list(d.get("running_task_ids") or []),
            tasks_processed=int(d.get("tasks_processed", 0)),
            tasks_failed=int(d.get("tasks_failed", 0)),
            last_activity_at=_dt(d.get("last_activity_at")),
            max_parallel_tasks=int(d.get("max_parallel_tasks", 3)),
            poll_interval_ms=int(d.get("poll_interval_ms", 5000)),
            started_at=_dt(d.get("started_at")),
            updated_at=_dt(d.get("updated_at")) or _now(),
        )
