"""Task lifecycle events.

The executor emits a ``TaskEvent`` every time a task changes state.
Events go to in-process subscribers (the cron scheduler uses them for
failure accounting) and are mirrored to the ``task-events.log`` JSONL
stream. A subscriber that raises never affects the executor or the other
subscribers.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from queuepilot.core.logging_config import log_task_event

logger = logging.getLogger("queuepilot.task_events")

EVENT_TYPES = {
    "created",
    "started",
    "completed",
    "skipped",
    "failed",
    "retry",
    "waiting_input",
    "resumed",
    "cancelled",
    "timeout",
    "prioritized",
    "spawned_subtasks",
}


@dataclass
class TaskEvent:
    """One lifecycle transition of a task."""
    event_type: str
    task_id: str
    status: str
    timestamp: str = field(default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()))
    error: Optional[str] = None
    error_code: Optional[str] = None
    schedule_id: Optional[str] = None
    trigger_id: Optional[str] = None
    workflow_run_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "ts": self.timestamp,
            "event": self.event_type,
            "task_id": self.task_id,
            "status": self.status,
        }
        for key in ("error", "error_code", "schedule_id", "trigger_id", "workflow_run_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.detail:
            data["detail"] = self.detail
        return data

    @classmethod
    def from_dict(cls, d: dict) -> "TaskEvent":
        return cls(
            event_type=d.get("event", ""),
            task_id=d.get("task_id", ""),
            status=d.get("status", ""),
            timestamp=d.get("ts", ""),
            error=d.get("error"),
            error_code=d.get("error_code"),
            schedule_id=d.get("schedule_id"),
            trigger_id=d.get("trigger_id"),
            workflow_run_id=d.get("workflow_run_id"),
            detail=d.get("detail") or {},
        )

    def format_line(self) -> str:
        line = f"[{self.timestamp}] {self.task_id} {self.event_type} ({self.status})"
        if self.error:
            line += f": {self.error[:100]}"
        return line


EventCallback = Callable[[TaskEvent], None]


class EventBus:
    """Fan-out of task events to subscribers and the JSONL log."""

    def __init__(self, history_size: int = 200) -> None:
        self._subscribers: List[EventCallback] = []
        self._history: List[TaskEvent] = []
        self._history_size = history_size
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: EventCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event: TaskEvent) -> None:
        log_task_event(event.to_dict())
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_size:
                del self._history[: len(self._history) - self._history_size]
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.error("Task event subscriber failed on %s/%s: %s", event.task_id, event.event_type, exc)

    def recent(self, n: int = 50, task_id: Optional[str] = None) -> List[TaskEvent]:
        with self._lock:
            events = list(self._history)
        if task_id:
            events = [e for e in events if e.task_id == task_id]
        return events[-n:]
