"""Schedule, trigger and workflow definition stores.

Each store keeps its records in a JSON file next to ``tasks.json`` and
follows the same conventions as ``TaskStore``: one re-entrant lock, an
atomic save after every mutation, copies handed to callers and
``NotFoundError`` for unknown IDs.
"""
from __future__ import annotations

import copy
from datetime import datetime, timezone
import logging
import re
import secrets
from typing import Any, Dict, List, Optional

from queuepilot.core import cron
from queuepilot.core.errors import ValidationError
from queuepilot.core.models import EXECUTION_MODES, TRIGGER_TYPES, Schedule, Trigger, Workflow
from queuepilot.core.store import JsonRecordStore, _as_int, validate_task_template

logger = logging.getLogger("queuepilot.definitions")

MAX_RECENT_DELIVERIES = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _reject_unknown(kind: str, fields: Dict[str, Any], allowed: set[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"unknown {kind} fields: {', '.join(sorted(unknown))}")


def _require_name(fields: Dict[str, Any]) -> None:
    if "name" in fields and (not isinstance(fields["name"], str) or not fields["name"].strip()):
        raise ValidationError("name must be a non-empty string")


# ── Schedules ────────────────────────────────────────────────

SCHEDULE_FIELDS = {
    "name", "description", "cron_expression", "timezone", "task_template",
    "workflow_id", "enabled", "max_consecutive_failures",
}


class ScheduleStore(JsonRecordStore[Schedule]):
    collection = "schedules"
    id_field = "schedule_id"
    record_cls = Schedule

    def __init__(self, store_path: Optional[str] = None, default_timezone: str = "UTC") -> None:
        self.default_timezone = default_timezone
        super().__init__(store_path)

    def _validate(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        _reject_unknown("schedule", fields, SCHEDULE_FIELDS)
        clean = dict(fields)
        _require_name(clean)
        if "cron_expression" in clean:
            result = cron.validate(clean["cron_expression"])
            if not result.valid:
                raise ValidationError(result.error or "Invalid cron expression")
        if "timezone" in clean:
            cron.get_zone(clean["timezone"])
        if clean.get("task_template") is not None:
            clean["task_template"] = validate_task_template(clean["task_template"])
        if "max_consecutive_failures" in clean:
            clean["max_consecutive_failures"] = _as_int(
                "max_consecutive_failures", clean["max_consecutive_failures"], minimum=1
            )
        if "enabled" in clean:
            clean["enabled"] = bool(clean["enabled"])
        return clean

    @staticmethod
    def _check_target(schedule: Schedule) -> None:
        if not schedule.task_template and not schedule.workflow_id:
            raise ValidationError("schedule needs a task_template or a workflow_id")

    def _refresh_next_run(self, schedule: Schedule, after: Optional[datetime] = None) -> None:
        if schedule.enabled:
            schedule.next_run_at = cron.next_run_time(schedule.cron_expression, schedule.timezone, after)
        else:
            schedule.next_run_at = None

    def create(self, fields: Dict[str, Any]) -> Schedule:
        clean = self._validate(fields)
        if "name" not in clean or "cron_expression" not in clean:
            raise ValidationError("name and cron_expression are required")
        clean.setdefault("timezone", self.default_timezone)
        cron.get_zone(clean["timezone"])
        clean["task_template"] = clean.get("task_template") or {}
        schedule = Schedule(schedule_id=self._new_id("sched"), **clean)
        self._check_target(schedule)
        self._refresh_next_run(schedule)
        with self._lock:
            self._records[schedule.schedule_id] = schedule
            self._save()
        logger.info("Schedule created: %s (%s, next=%s)", schedule.schedule_id, schedule.cron_expression, schedule.next_run_at)
        return copy.deepcopy(schedule)

    def get(self, schedule_id: str) -> Optional[Schedule]:
        with self._lock:
            schedule = self._records.get(schedule_id)
            return copy.deepcopy(schedule) if schedule else None

    def list(self, enabled: Optional[bool] = None) -> List[Schedule]:
        with self._lock:
            items = [copy.deepcopy(s) for s in self._records.values()]
        if enabled is not None:
            items = [s for s in items if s.enabled == enabled]
        return sorted(items, key=lambda s: (s.created_at, s.schedule_id))

    def update(self, schedule_id: str, fields: Dict[str, Any]) -> Schedule:
        clean = self._validate(fields)
        with self._lock:
            live = self._get_live(schedule_id, "schedule")
            schedule = copy.deepcopy(live)
            was_enabled = schedule.enabled
            for key, value in clean.items():
                setattr(schedule, key, value)
            if schedule.task_template is None:
                schedule.task_template = {}
            self._check_target(schedule)
            if {"cron_expression", "timezone", "enabled"} & set(clean):
                self._refresh_next_run(schedule)
            if schedule.enabled and not was_enabled:
                schedule.consecutive_failures = 0
                schedule.last_error = None
            schedule.updated_at = _now()
            self._records[schedule_id] = schedule
            self._save()
            return copy.deepcopy(schedule)

    def delete(self, schedule_id: str) -> None:
        with self._lock:
            self._get_live(schedule_id, "schedule")
            del self._records[schedule_id]
            self._save()

    def due(self, now: Optional[datetime] = None) -> List[Schedule]:
        now = now or _now()
        return [
            s for s in self.list(enabled=True)
            if s.next_run_at is not None and s.next_run_at <= now
        ]

    def ensure_next_run(self, now: Optional[datetime] = None) -> int:
        """Give every enabled schedule without ``next_run_at`` one. Returns how many changed."""
        changed = 0
        with self._lock:
            for schedule in self._records.values():
                if schedule.enabled and schedule.next_run_at is None:
                    try:
                        self._refresh_next_run(schedule, now)
                    except ValidationError as exc:
                        logger.error("Schedule %s has an invalid cron: %s", schedule.schedule_id, exc)
                        continue
                    changed += 1
            if changed:
                self._save()
        return changed

    def mark_run(self, schedule_id: str, ran_at: datetime, advance: bool = True) -> Schedule:
        """Record a run and, when *advance*, move ``next_run_at`` past *ran_at*."""
        with self._lock:
            schedule = self._get_live(schedule_id, "schedule")
            schedule.last_run_at = ran_at
            schedule.run_count += 1
            if advance and schedule.enabled:
                after = max(ran_at, schedule.next_run_at) if schedule.next_run_at else ran_at
                self._refresh_next_run(schedule, after)
            schedule.updated_at = _now()
            self._save()
            return copy.deepcopy(schedule)

    def record_failure(self, schedule_id: str, error: str) -> Schedule:
        """Count a failure; disables the schedule at ``max_consecutive_failures``."""
        with self._lock:
            schedule = self._get_live(schedule_id, "schedule")
            schedule.consecutive_failures += 1
            schedule.last_error = error
            if schedule.consecutive_failures >= schedule.max_consecutive_failures and schedule.enabled:
                schedule.enabled = False
                schedule.next_run_at = None
                logger.warning(
                    "Schedule %s disabled after %d consecutive failures",
                    schedule_id, schedule.consecutive_failures,
                )
            schedule.updated_at = _now()
            self._save()
            return copy.deepcopy(schedule)

    def record_success(self, schedule_id: str) -> Schedule:
        with self._lock:
            schedule = self._get_live(schedule_id, "schedule")
            if schedule.consecutive_failures or schedule.last_error:
                schedule.consecutive_failures = 0
                schedule.last_error = None
                schedule.updated_at = _now()
                self._save()
            return copy.deepcopy(schedule)


# ── Triggers ─────────────────────────────────────────────────

TRIGGER_FIELDS = {
    "name", "description", "trigger_type", "pattern", "sender_filter", "subject_filter",
    "task_template", "workflow_id", "priority", "webhook_secret", "enabled",
}


class TriggerStore(JsonRecordStore[Trigger]):
    collection = "triggers"
    id_field = "trigger_id"
    record_cls = Trigger

    def _validate(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        _reject_unknown("trigger", fields, TRIGGER_FIELDS)
        clean = dict(fields)
        _require_name(clean)
        if "trigger_type" in clean and clean["trigger_type"] not in TRIGGER_TYPES:
            raise ValidationError(f"trigger_type must be one of {sorted(TRIGGER_TYPES)}")
        for key in ("pattern", "sender_filter", "subject_filter"):
            value = clean.get(key)
            if value:
                try:
                    re.compile(value, re.IGNORECASE)
                except re.error as exc:
                    raise ValidationError(f"{key} is not a valid regular expression: {exc}") from exc
        if clean.get("task_template") is not None:
            clean["task_template"] = validate_task_template(clean["task_template"])
        if "priority" in clean:
            clean["priority"] = _as_int("priority", clean["priority"])
        if "enabled" in clean:
            clean["enabled"] = bool(clean["enabled"])
        return clean

    @staticmethod
    def _check_target(trigger: Trigger) -> None:
        if not trigger.task_template and not trigger.workflow_id:
            raise ValidationError("trigger needs a task_template or a workflow_id")

    def create(self, fields: Dict[str, Any]) -> Trigger:
        clean = self._validate(fields)
        if "name" not in clean or "trigger_type" not in clean:
            raise ValidationError("name and trigger_type are required")
        if clean["trigger_type"] == "webhook" and not clean.get("webhook_secret"):
            clean["webhook_secret"] = secrets.token_urlsafe(24)
        trigger = Trigger(trigger_id=self._new_id("trig"), **clean)
        self._check_target(trigger)
        with self._lock:
            self._records[trigger.trigger_id] = trigger
            self._save()
        logger.info("Trigger created: %s (%s)", trigger.trigger_id, trigger.trigger_type)
        return copy.deepcopy(trigger)

    def get(self, trigger_id: str) -> Optional[Trigger]:
        with self._lock:
            trigger = self._records.get(trigger_id)
            return copy.deepcopy(trigger) if trigger else None

    def list(self, trigger_type: Optional[str] = None, enabled: Optional[bool] = None) -> List[Trigger]:
        with self._lock:
            items = [copy.deepcopy(t) for t in self._records.values()]
        if trigger_type:
            items = [t for t in items if t.trigger_type == trigger_type]
        if enabled is not None:
            items = [t for t in items if t.enabled == enabled]
        return sorted(items, key=lambda t: (t.created_at, t.trigger_id))

    def update(self, trigger_id: str, fields: Dict[str, Any]) -> Trigger:
        clean = self._validate(fields)
        with self._lock:
            trigger = copy.deepcopy(self._get_live(trigger_id, "trigger"))
            for key, value in clean.items():
                setattr(trigger, key, value)
            self._check_target(trigger)
            trigger.updated_at = _now()
            self._records[trigger_id] = trigger
            self._save()
            return copy.deepcopy(trigger)

    def delete(self, trigger_id: str) -> None:
        with self._lock:
            self._get_live(trigger_id, "trigger")
            del self._records[trigger_id]
            self._save()

    def lookup_delivery(self, trigger_id: str, idempotency_key: str) -> Optional[str]:
        with self._lock:
            trigger = self._records.get(trigger_id)
            if trigger is None:
                return None
            return trigger.recent_deliveries.get(idempotency_key)

    def record_fire(
        self,
        trigger_id: str,
        task_id: Optional[str],
        idempotency_key: Optional[str] = None,
        fired_at: Optional[datetime] = None,
    ) -> Trigger:
        with self._lock:
            trigger = self._get_live(trigger_id, "trigger")
            trigger.trigger_count += 1
            trigger.last_triggered_at = fired_at or _now()
            if idempotency_key and task_id:
                trigger.recent_deliveries[idempotency_key] = task_id
                while len(trigger.recent_deliveries) > MAX_RECENT_DELIVERIES:
                    oldest = next(iter(trigger.recent_deliveries))
                    del trigger.recent_deliveries[oldest]
            trigger.updated_at = _now()
            self._save()
            return copy.deepcopy(trigger)


# ── Workflows ────────────────────────────────────────────────

WORKFLOW_FIELDS = {
    "name", "description", "steps", "default_execution_mode", "max_parallel_tasks",
    "timeout_seconds", "enabled",
}


def validate_steps(steps: Any) -> List[Dict[str, Any]]:
    if not isinstance(steps, list) or not steps:
        raise ValidationError("steps must be a non-empty list")
    normalized: List[Dict[str, Any]] = []
    for index, step in enumerate(steps):
        clean = validate_task_template(step, context=f"steps[{index}]")
        depends_on = clean.get("depends_on")
        if depends_on is not None:
            if not isinstance(depends_on, list):
                raise ValidationError(f"steps[{index}].depends_on must be a list of step indices")
            for dep in depends_on:
                # Only earlier steps, so a workflow can never contain a cycle
                if isinstance(dep, bool) or not isinstance(dep, int) or not 0 <= dep < index:
                    raise ValidationError(f"steps[{index}].depends_on must reference earlier steps")
        normalized.append(clean)
    return normalized


class WorkflowStore(JsonRecordStore[Workflow]):
    collection = "workflows"
    id_field = "workflow_id"
    record_cls = Workflow

    def _validate(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        _reject_unknown("workflow", fields, WORKFLOW_FIELDS)
        clean = dict(fields)
        _require_name(clean)
        if "steps" in clean:
            clean["steps"] = validate_steps(clean["steps"])
        if "default_execution_mode" in clean and clean["default_execution_mode"] not in EXECUTION_MODES:
            raise ValidationError(f"default_execution_mode must be one of {sorted(EXECUTION_MODES)}")
        for key in ("max_parallel_tasks", "timeout_seconds"):
            if key in clean:
                clean[key] = _as_int(key, clean[key], minimum=1)
        if "enabled" in clean:
            clean["enabled"] = bool(clean["enabled"])
        return clean

    def create(self, fields: Dict[str, Any]) -> Workflow:
        clean = self._validate(fields)
        if "name" not in clean or "steps" not in clean:
            raise ValidationError("name and steps are required")
        workflow = Workflow(workflow_id=self._new_id("wf"), **clean)
        with self._lock:
            self._records[workflow.workflow_id] = workflow
            self._save()
        logger.info("Workflow created: %s (%d steps)", workflow.workflow_id, len(workflow.steps))
        return copy.deepcopy(workflow)

    def get(self, workflow_id: str) -> Optional[Workflow]:
        with self._lock:
            workflow = self._records.get(workflow_id)
            return copy.deepcopy(workflow) if workflow else None

    def list(self, enabled: Optional[bool] = None) -> List[Workflow]:
        with self._lock:
            items = [copy.deepcopy(w) for w in self._records.values()]
        if enabled is not None:
            items = [w for w in items if w.enabled == enabled]
        return sorted(items, key=lambda w: (w.created_at, w.workflow_id))

    def update(self, workflow_id: str, fields: Dict[str, Any]) -> Workflow:
        clean = self._validate(fields)
        with self._lock:
            workflow = self._get_live(workflow_id, "workflow")
            for key, value in clean.items():
                setattr(workflow, key, value)
            if "steps" in clean:
                workflow.version += 1
            workflow.updated_at = _now()
            self._save()
            return copy.deepcopy(workflow)

    def delete(self, workflow_id: str) -> None:
        with self._lock:
            self._get_live(workflow_id, "workflow")
            del self._records[workflow_id]
            self._save()
