"""Cron scheduler: turns due schedules into tasks or workflow runs.

Runs on its own daemon thread, checking ``ScheduleStore.due()`` every
``poll_seconds``. Failure accounting listens to the executor's task
events: a terminal failure of a task a schedule created counts against
the schedule, a completion resets the count. A workflow run counts once,
when its last task settles: failed if any of its tasks failed, a success
if all completed, nothing if it was cancelled. Materialization errors
count too. At ``max_consecutive_failures`` the schedule is disabled.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from queuepilot.core.audit import log_event
from queuepilot.core.definitions import ScheduleStore, WorkflowStore
from queuepilot.core.errors import NotFoundError, ValidationError
from queuepilot.core.models import COMPLETED, ERROR_DEPENDENCY, FAILED, Schedule, Task
from queuepilot.core.store import TaskStore
from queuepilot.core.task_events import EventBus, TaskEvent
from queuepilot.core.workflows import run_workflow

logger = logging.getLogger("queuepilot.scheduler")

DEFAULT_TEMPLATE_PRIORITY = 5

SETTLING_EVENTS = {"completed", "skipped", "failed", "timeout", "cancelled"}
MAX_SETTLED_RUNS = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CronScheduler:
    def __init__(
        self,
        schedules: ScheduleStore,
        store: TaskStore,
        workflows: Optional[WorkflowStore] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        poll_seconds: float = 60,
        data_dir: Optional[str] = None,
    ) -> None:
        self.schedules = schedules
        self.store = store
        self.workflows = workflows
        self.clock = clock or _utcnow
        self.poll_seconds = poll_seconds
        self.data_dir = data_dir
        self._lock = threading.Lock()
        self._settled_runs: Dict[str, None] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        if events is not None:
            self._unsubscribe = events.subscribe(self._on_task_event)

    # ── lifecycle ────────────────────────────────────────────

    def initialize_schedules(self) -> int:
        return self.schedules.ensure_next_run(self.clock())

    def start(self) -> None:
        self.initialize_schedules()
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="cron-scheduler")
        self._thread.start()
        logger.info("Cron scheduler started (poll=%ss)", self.poll_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(5)
        self._thread = None

    def close(self) -> None:
        self.stop()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("Scheduler loop error: %s", exc)
            self._stop_event.wait(self.poll_seconds)

    # ── firing ───────────────────────────────────────────────

    def tick(self, now: Optional[datetime] = None) -> List[Task]:
        """Fire every enabled schedule whose ``next_run_at`` has passed."""
        now = now or self.clock()
        created: List[Task] = []
        for schedule in self.schedules.due(now):
            created.extend(self._fire(schedule, now, advance=True))
        return created

    def run_schedule(self, schedule_id: str) -> List[Task]:
        """Fire a schedule now, outside its cron timing."""
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            raise NotFoundError("schedule", schedule_id)
        return self._fire(schedule, self.clock(), advance=False)

    def _fire(self, schedule: Schedule, now: datetime, advance: bool) -> List[Task]:
        try:
            tasks = self._materialize(schedule, now)
        except (ValidationError, NotFoundError) as exc:
            logger.error("Schedule %s (%s) failed to run: %s", schedule.schedule_id, schedule.name, exc)
            self.schedules.mark_run(schedule.schedule_id, now, advance=advance)
            updated = self.schedules.record_failure(schedule.schedule_id, str(exc))
            self._audit("schedule.error", {
                "schedule_id": schedule.schedule_id,
                "error": str(exc),
                "consecutive_failures": updated.consecutive_failures,
                "enabled": updated.enabled,
            })
            return []
        self.schedules.mark_run(schedule.schedule_id, now, advance=advance)
        logger.info("Schedule %s (%s) created %d task(s)", schedule.schedule_id, schedule.name, len(tasks))
        self._audit("schedule.run", {"schedule_id": schedule.schedule_id, "task_ids": [t.task_id for t in tasks]})
        return tasks

    def _materialize(self, schedule: Schedule, now: datetime) -> List[Task]:
        tags: Dict[str, Any] = {"schedule_id": schedule.schedule_id}
        context = {
            "scheduled_by": "cron",
            "schedule_name": schedule.name,
            "scheduled_at": now.isoformat(),
        }
        if schedule.workflow_id:
            if self.workflows is None:
                raise ValidationError("no workflow store configured")
            return run_workflow(self.workflows, self.store, schedule.workflow_id, context, tags)

        fields = dict(schedule.task_template)
        fields.setdefault("priority", DEFAULT_TEMPLATE_PRIORITY)
        template_input = fields.get("input")
        if template_input is None or isinstance(template_input, dict):
            fields["input"] = {**(template_input or {}), **context}
        fields.update(tags)
        return [self.store.create_task(fields)]

    # ── failure accounting ───────────────────────────────────

    def _on_task_event(self, event: TaskEvent) -> None:
        if not event.schedule_id or event.event_type not in SETTLING_EVENTS:
            return
        if self.schedules.get(event.schedule_id) is None:
            return
        if event.workflow_run_id:
            self._settle_run(event.schedule_id, event.workflow_run_id)
        elif event.event_type in ("completed", "skipped"):
            self.schedules.record_success(event.schedule_id)
        elif event.event_type in ("failed", "timeout"):
            self._count_failure(event.schedule_id, f"task {event.task_id} failed: {event.error or event.error_code}")

    def _settle_run(self, schedule_id: str, run_id: str) -> None:
        """Count a workflow run once, after its last task reaches a terminal status."""
        with self._lock:
            if run_id in self._settled_runs:
                return
            tasks = self.store.list_tasks(workflow_run_id=run_id)
            if not tasks or not all(t.is_terminal for t in tasks):
                return
            self._settled_runs[run_id] = None
            while len(self._settled_runs) > MAX_SETTLED_RUNS:
                del self._settled_runs[next(iter(self._settled_runs))]

        failed = [t for t in tasks if t.status == FAILED]
        if failed:
            # Report the root cause, not the dependents it took down
            root = next((t for t in failed if t.error_code != ERROR_DEPENDENCY), failed[0])
            self._count_failure(
                schedule_id, f"workflow run {run_id} failed at task {root.task_id}: {root.error or root.error_code}"
            )
        elif all(t.status == COMPLETED for t in tasks):
            self.schedules.record_success(schedule_id)

    def _count_failure(self, schedule_id: str, error: str) -> None:
        updated = self.schedules.record_failure(schedule_id, error)
        if not updated.enabled and updated.consecutive_failures == updated.max_consecutive_failures:
            self._audit("schedule.disabled", {
                "schedule_id": schedule_id,
                "consecutive_failures": updated.consecutive_failures,
            })

    def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.data_dir:
            try:
                log_event(self.data_dir, event_type, payload)
            except OSError as exc:
                logger.warning("Audit write failed: %s", exc)
