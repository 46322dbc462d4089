"""Executor state: the singleton record shared by every executor instance."""
from __future__ import annotations

import copy
from datetime import datetime, timezone
import json
import logging
import os
import threading
from typing import Any, Optional

from queuepilot.core.errors import ValidationError
from queuepilot.core.models import EXECUTOR_STATUSES, ExecutorState

logger = logging.getLogger("queuepilot.state")

STATE_FIELDS = {
    "status", "current_task_id", "running_task_ids", "tasks_processed", "tasks_failed",
    "last_activity_at", "max_parallel_tasks", "poll_interval_ms", "started_at",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutorStateStore:
    def __init__(self, store_path: Optional[str] = None) -> None:
        self._state = ExecutorState()
        self._store_path = store_path
        self._lock = threading.RLock()
        if store_path:
            self._load()

    def _load(self) -> None:
        if not self._store_path or not os.path.exists(self._store_path):
            return
        try:
            with open(self._store_path, "r", encoding="utf-8") as f:
                self._state = ExecutorState.from_dict(json.load(f))
        except Exception as exc:
            logger.error("Failed to load executor state from %s: %s", self._store_path, exc)

    def _save(self) -> None:
        if not self._store_path:
            return
        dir_path = os.path.dirname(self._store_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        tmp_path = f"{self._store_path}.tmp"
        with self._lock:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._store_path)

    def get(self) -> ExecutorState:
        with self._lock:
            return copy.deepcopy(self._state)

    def update(self, **fields: Any) -> ExecutorState:
        unknown = set(fields) - STATE_FIELDS
        if unknown:
            raise ValidationError(f"unknown executor state fields: {', '.join(sorted(unknown))}")
        if "status" in fields and fields["status"] not in EXECUTOR_STATUSES:
            raise ValidationError(f"Invalid executor status: {fields['status']}")
        with self._lock:
            for key, value in fields.items():
                setattr(self._state, key, value)
            self._state.updated_at = _now()
            self._save()
            return copy.deepcopy(self._state)

    def add_running(self, task_id: str) -> None:
        with self._lock:
            if task_id not in self._state.running_task_ids:
                self._state.running_task_ids.append(task_id)
            self._state.current_task_id = task_id
            self._state.last_activity_at = _now()
            self._state.updated_at = _now()
            self._save()

    def remove_running(self, task_id: str) -> None:
        with self._lock:
            if task_id in self._state.running_task_ids:
                self._state.running_task_ids.remove(task_id)
            if self._state.current_task_id == task_id:
                ids = self._state.running_task_ids
                self._state.current_task_id = ids[-1] if ids else None
            self._state.last_activity_at = _now()
            self._state.updated_at = _now()
            self._save()

    def increment(self, processed: int = 0, failed: int = 0) -> ExecutorState:
        with self._lock:
            self._state.tasks_processed += processed
            self._state.tasks_failed += failed
            self._state.last_activity_at = _now()
            self._state.updated_at = _now()
            self._save()
            return copy.deepcopy(self._state)
