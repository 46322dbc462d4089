"""Task store.

Tasks live in memory behind a re-entrant lock and are persisted to a JSON
file (atomic write + rename) after every mutation. Every mutation happens
under the lock, so the conditional updates used for claiming are
compare-and-swap: two executors sharing one store can never both move the
same task out of ``pending``.

The lock and the in-memory copy are per process. The file is read once at
startup and rewritten whole on every save, so only one process may own a
data directory; a second process would neither see the first one's claims
nor keep its writes.

Callers always receive copies; mutating a returned ``Task`` has no effect on
the store.
"""
from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar
import uuid

from queuepilot.core.errors import NotFoundError, ValidationError
from queuepilot.core.models import (
    COMPLETED,
    EXECUTION_MODES,
    PENDING,
    RUNNING,
    TASK_STATUSES,
    TERMINAL_STATUSES,
    Task,
)

logger = logging.getLogger("queuepilot.store")

R = TypeVar("R")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def queue_order_key(task: Task) -> tuple:
    """Priority descending, then FIFO by creation time, then ID."""
    return (-task.priority, task.created_at, task.task_id)


# Fields a caller may set when creating a task.
CREATE_FIELDS = {
    "title", "task_type", "description", "parent_id", "chat_id", "priority", "status",
    "execution_mode", "dependencies", "condition", "waiting_for_input", "input_prompt",
    "input", "max_retries", "workflow_id", "workflow_run_id", "schedule_id", "trigger_id",
    "timeout_seconds", "max_parallel", "estimated_duration",
}

# Fields the executor and control surface may change afterwards.
UPDATE_FIELDS = CREATE_FIELDS | {
    "condition_result", "operator_input", "output", "error", "error_code", "retry_count",
    "not_before", "actual_duration", "started_at", "completed_at", "claim_token",
}

INITIAL_STATUSES = {PENDING, "paused", "waiting_input"}


class JsonRecordStore(Generic[R]):
    """Dict of records keyed by ID, persisted as ``{collection: [...]}``."""

    collection = "records"
    id_field = "id"
    record_cls: Type[Any] = dict

    def __init__(self, store_path: Optional[str] = None) -> None:
        self._records: Dict[str, R] = {}
        self._store_path = store_path
        self._lock = threading.RLock()
        if store_path:
            self._load()

    def _load(self) -> None:
        if not self._store_path or not os.path.exists(self._store_path):
            return
        try:
            with open(self._store_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            for item in raw.get(self.collection, []):
                record = self.record_cls.from_dict(item)
                self._records[getattr(record, self.id_field)] = record
        except Exception as exc:
            logger.error("Failed to load %s from %s: %s", self.collection, self._store_path, exc)

    def _save(self) -> None:
        if not self._store_path:
            return
        dir_path = os.path.dirname(self._store_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        tmp_path = f"{self._store_path}.tmp"
        with self._lock:
            payload = {self.collection: [r.to_dict() for r in self._records.values()]}
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._store_path)

    def _get_live(self, record_id: str, kind: str) -> R:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(kind, record_id)
        return record

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _check_json(name: str, value: Any) -> None:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be JSON-serializable: {exc}") from exc


def _as_int(name: str, value: Any, minimum: Optional[int] = None, optional: bool = False) -> Optional[int]:
    if value is None and optional:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer") from exc
    if minimum is not None and parsed < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return parsed


def validate_task_template(template: Any, context: str = "task_template") -> Dict[str, Any]:
    """Check a template used by schedules, triggers and workflow steps.

    Returns a normalized copy. ``task_type`` falls back to ``action``.
    """
    if not isinstance(template, dict):
        raise ValidationError(f"{context} must be an object")
    title = template.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError(f"{context}.title is required")
    normalized = dict(template)
    normalized["task_type"] = template.get("task_type") or "action"
    mode = normalized.get("execution_mode")
    if mode is not None and mode not in EXECUTION_MODES:
        raise ValidationError(f"{context}.execution_mode must be one of {sorted(EXECUTION_MODES)}")
    if "priority" in normalized and normalized["priority"] is not None:
        normalized["priority"] = _as_int(f"{context}.priority", normalized["priority"])
    _check_json(context, normalized)
    return normalized


class TaskStore(JsonRecordStore[Task]):
    """Durable table of tasks with conditional updates for atomic claims."""

    collection = "tasks"
    id_field = "task_id"
    record_cls = Task

    def __init__(self, store_path: Optional[str] = None, default_max_retries: int = 3) -> None:
        self.default_max_retries = default_max_retries
        super().__init__(store_path)

    # ── validation ───────────────────────────────────────────

    def _would_cycle(self, task_id: str, dependencies: Iterable[str]) -> bool:
        stack = list(dependencies)
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current == task_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            dep = self._records.get(current)
            if dep:
                stack.extend(dep.dependencies)
        return False

    def _validate_dependencies(self, task_id: str, dependencies: Any) -> List[str]:
        if dependencies is None:
            return []
        if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
            raise ValidationError("dependencies must be a list of task IDs")
        deps = list(dict.fromkeys(dependencies))
        missing = [d for d in deps if d not in self._records]
        if missing:
            raise ValidationError(f"unknown dependencies: {', '.join(missing)}")
        if task_id in deps or self._would_cycle(task_id, deps):
            raise ValidationError("dependencies would create a cycle")
        return deps

    def _validate_fields(self, task_id: str, fields: Dict[str, Any], allowed: set[str]) -> Dict[str, Any]:
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"unknown task fields: {', '.join(sorted(unknown))}")
        clean = dict(fields)
        if "title" in clean and (not isinstance(clean["title"], str) or not clean["title"].strip()):
            raise ValidationError("title must be a non-empty string")
        if "task_type" in clean and (not isinstance(clean["task_type"], str) or not clean["task_type"].strip()):
            raise ValidationError("task_type must be a non-empty string")
        if "status" in clean and clean["status"] not in TASK_STATUSES:
            raise ValidationError(f"Invalid status: {clean['status']}")
        if "execution_mode" in clean and clean["execution_mode"] not in EXECUTION_MODES:
            raise ValidationError(f"Invalid execution_mode: {clean['execution_mode']}")
        for key in ("priority", "retry_count"):
            if key in clean:
                clean[key] = _as_int(key, clean[key], minimum=0 if key == "retry_count" else None)
        if "max_retries" in clean:
            clean["max_retries"] = _as_int("max_retries", clean["max_retries"], minimum=0)
        for key in ("timeout_seconds", "max_parallel", "estimated_duration", "actual_duration"):
            if key in clean:
                clean[key] = _as_int(key, clean[key], minimum=0 if key == "actual_duration" else 1, optional=True)
        if "parent_id" in clean and clean["parent_id"] is not None:
            if clean["parent_id"] == task_id or clean["parent_id"] not in self._records:
                raise ValidationError(f"unknown parent_id: {clean['parent_id']}")
        if "dependencies" in clean:
            clean["dependencies"] = self._validate_dependencies(task_id, clean["dependencies"])
        for key in ("input", "output"):
            if key in clean:
                _check_json(key, clean[key])
        return clean

    # ── create ───────────────────────────────────────────────

    def _build(self, fields: Dict[str, Any]) -> Task:
        task_id = self._new_id("task")
        clean = self._validate_fields(task_id, fields, CREATE_FIELDS)
        if "title" not in clean or "task_type" not in clean:
            raise ValidationError("title and task_type are required")
        status = clean.pop("status", PENDING)
        if status not in INITIAL_STATUSES:
            raise ValidationError(f"tasks cannot be created as {status}")
        clean.setdefault("max_retries", self.default_max_retries)
        if clean.get("waiting_for_input"):
            status = "waiting_input"
        return Task(task_id=task_id, status=status, **clean)

    def create_task(self, fields: Dict[str, Any]) -> Task:
        with self._lock:
            task = self._build(fields)
            self._records[task.task_id] = task
            self._save()
        logger.info("Task created: %s (%s, priority=%s)", task.task_id, task.title, task.priority)
        return copy.deepcopy(task)

    def create_tasks(
        self,
        fields_list: List[Dict[str, Any]],
        batch_dependencies: Optional[List[List[int]]] = None,
    ) -> List[Task]:
        """Create several tasks; either all are stored or none are.

        ``batch_dependencies[i]`` lists indices of earlier items that item
        ``i`` depends on, for batches whose IDs are not known up front.
        """
        with self._lock:
            created: List[Task] = []
            try:
                for index, fields in enumerate(fields_list):
                    if batch_dependencies and index < len(batch_dependencies) and batch_dependencies[index]:
                        fields = dict(fields)
                        deps = list(fields.get("dependencies") or [])
                        for dep_index in batch_dependencies[index]:
                            if not 0 <= dep_index < index:
                                raise ValidationError(f"item {index} can only depend on earlier items")
                            deps.append(created[dep_index].task_id)
                        fields["dependencies"] = deps
                    task = self._build(fields)
                    # Visible to later items of the batch (parent/dependency lookups).
                    self._records[task.task_id] = task
                    created.append(task)
            except Exception:
                for task in created:
                    self._records.pop(task.task_id, None)
                raise
            self._save()
        logger.info("Created %d tasks", len(created))
        return [copy.deepcopy(t) for t in created]

    # ── read ─────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._records.get(task_id)
            return copy.deepcopy(task) if task else None

    def snapshot(self) -> List[Task]:
        """Consistent copy of every task, in queue order."""
        with self._lock:
            return sorted((copy.deepcopy(t) for t in self._records.values()), key=queue_order_key)

    def get_tasks_by_parent_id(self, parent_id: str) -> List[Task]:
        with self._lock:
            children = [copy.deepcopy(t) for t in self._records.values() if t.parent_id == parent_id]
        return sorted(children, key=lambda t: (t.created_at, t.task_id))

    def get_tasks_by_dependency(self, task_id: str) -> List[Task]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._records.values() if task_id in t.dependencies]

    def list_tasks(
        self,
        status: Optional[str] = None,
        chat_id: Optional[str] = None,
        limit: Optional[int] = None,
        workflow_run_id: Optional[str] = None,
    ) -> List[Task]:
        tasks = self.snapshot()
        if status:
            tasks = [t for t in tasks if t.status == status]
        if chat_id:
            tasks = [t for t in tasks if t.chat_id == chat_id]
        if workflow_run_id:
            tasks = [t for t in tasks if t.workflow_run_id == workflow_run_id]
        if limit is not None:
            tasks = tasks[: max(0, limit)]
        return tasks

    def dependencies_met(self, task: Task) -> bool:
        with self._lock:
            for dep_id in task.dependencies:
                dep = self._records.get(dep_id)
                if dep is None or dep.status != COMPLETED:
                    return False
            return True

    def get_next_pending_task(self, now: Optional[datetime] = None) -> Optional[Task]:
        now = now or _now()
        with self._lock:
            for task in self.snapshot():
                if task.status != PENDING or task.waiting_for_input:
                    continue
                if task.not_before and task.not_before > now:
                    continue
                if self.dependencies_met(task):
                    return task
        return None

    def get_tasks_waiting_for_input(self) -> List[Task]:
        with self._lock:
            waiting = [copy.deepcopy(t) for t in self._records.values() if t.waiting_for_input]
        return sorted(waiting, key=queue_order_key)

    def get_queue_stats(self) -> Dict[str, int]:
        stats = {status: 0 for status in sorted(TASK_STATUSES)}
        stats.update({"total": 0, "waiting_for_input": 0, "retrying": 0})
        with self._lock:
            for task in self._records.values():
                stats[task.status] = stats.get(task.status, 0) + 1
                stats["total"] += 1
                if task.waiting_for_input:
                    stats["waiting_for_input"] += 1
                if task.status == PENDING and task.retry_count > 0:
                    stats["retrying"] += 1
        return stats

    # ── update ───────────────────────────────────────────────

    def update_task_where(
        self,
        task_id: str,
        predicate: Callable[[Task], bool],
        fields: Dict[str, Any],
    ) -> Optional[Task]:
        """Apply *fields* only if *predicate* holds for the current record.

        Returns the updated copy, or ``None`` when the predicate failed.
        Raises ``NotFoundError`` for unknown IDs.
        """
        with self._lock:
            task = self._get_live(task_id, "task")
            if not predicate(copy.deepcopy(task)):
                return None
            clean = self._validate_fields(task_id, fields, UPDATE_FIELDS)
            for key, value in clean.items():
                setattr(task, key, value)
            now = _now()
            task.updated_at = now
            if task.status in TERMINAL_STATUSES and "completed_at" not in clean and task.completed_at is None:
                task.completed_at = now
            self._save()
            return copy.deepcopy(task)

    def update_task(
        self,
        task_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[Task]:
        """Update a task, optionally only if its status is *expected_status*."""
        if expected_status is None:
            return self.update_task_where(task_id, lambda t: True, fields)
        return self.update_task_where(task_id, lambda t: t.status == expected_status, fields)

    def claim_task(self, task_id: str, fields: Optional[Dict[str, Any]] = None) -> Optional[Task]:
        """Atomically move a pending task to ``running``. ``None`` means someone else won."""
        claim_fields: Dict[str, Any] = {"status": RUNNING, "started_at": _now(), "claim_token": uuid.uuid4().hex}
        claim_fields.update(fields or {})
        try:
            return self.update_task_where(
                task_id,
                lambda t: t.status == PENDING and not t.waiting_for_input,
                claim_fields,
            )
        except NotFoundError:
            return None

    # ── delete ───────────────────────────────────────────────

    def delete_task(self, task_id: str) -> int:
        """Delete a task and, recursively, its children. Returns the number removed."""
        with self._lock:
            self._get_live(task_id, "task")
            doomed = [task_id]
            index = 0
            while index < len(doomed):
                parent = doomed[index]
                doomed.extend(t.task_id for t in self._records.values() if t.parent_id == parent)
                index += 1
            for tid in doomed:
                self._records.pop(tid, None)
            self._save()
        logger.info("Deleted task %s (%d including children)", task_id, len(doomed))
        return len(doomed)

    def purge_finished(self, older_than_hours: float = 24) -> int:
        """Remove terminal tasks finished before the cutoff."""
        cutoff = _now() - timedelta(hours=older_than_hours)
        with self._lock:
            doomed = [
                t.task_id for t in self._records.values()
                if t.status in TERMINAL_STATUSES and t.completed_at and t.completed_at < cutoff
            ]
            for tid in doomed:
                self._records.pop(tid, None)
            if doomed:
                self._save()
        return len(doomed)

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
            self._save()
        return count
