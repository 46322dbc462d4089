"""Workflow executor.

One decision loop per ``Executor`` polls the shared ``TaskStore``, picks
eligible tasks in priority order, claims each with a conditional update
and hands it to a runner on its own daemon thread. Everything a runner
reports back is written with another conditional update keyed on
``status == running``, so a task that was cancelled or timed out while
its runner was busy keeps its terminal state and the late result is
dropped.

Several executors in one process may share one store; each only bounds
its own in-flight set, and the claim decides who gets a task. Every claim
stamps a fresh ``claim_token`` and outcomes are written only while the
token still matches, so a runner from an earlier dispatch of the same task
can never finish the current one. The store is process-local: one
``queuepilot serve`` per data directory.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from queuepilot.core.conditions import ConditionEvaluator, evaluate_condition
from queuepilot.core.errors import InputRequired, NotFoundError, TaskStateError
from queuepilot.core.models import (
    CANCELLED,
    COMPLETED,
    ERROR_CONDITION,
    ERROR_DEPENDENCY,
    ERROR_NO_RUNNER,
    ERROR_RUNNER,
    ERROR_TIMEOUT,
    FAILED,
    PENDING,
    RUNNING,
    TERMINAL_STATUSES,
    WAITING_DEPENDENCY,
    WAITING_INPUT,
    Task,
)
from queuepilot.core.runners import RunnerRegistry, TaskContext
from queuepilot.core.state import ExecutorStateStore
from queuepilot.core.store import TaskStore
from queuepilot.core.task_events import EventBus, EventCallback, TaskEvent

logger = logging.getLogger("queuepilot.executor")

PRIORITY_BOOST = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _InFlight:
    task_id: str
    context: TaskContext
    thread: Optional[threading.Thread] = None


class Executor:
    def __init__(
        self,
        store: TaskStore,
        state_store: ExecutorStateStore,
        runners: Optional[RunnerRegistry] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_parallel_tasks: int = 3,
        poll_interval_ms: int = 5000,
        retry_backoff_seconds: float = 5.0,
        retry_backoff_max_seconds: float = 300.0,
        name: str = "executor",
    ) -> None:
        self.store = store
        self.state_store = state_store
        self.runners = runners or RunnerRegistry()
        self.condition_evaluator = condition_evaluator or evaluate_condition
        self.events = events or EventBus()
        self.clock = clock or _utcnow
        self.max_parallel_tasks = max(1, max_parallel_tasks)
        self.poll_interval_ms = max(1, poll_interval_ms)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.name = name

        self._inflight: Dict[str, _InFlight] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── control surface ──────────────────────────────────────

    def start(self) -> None:
        """Mark the executor running and start the poll thread."""
        self.state_store.update(
            status="running",
            started_at=self.clock(),
            max_parallel_tasks=self.max_parallel_tasks,
            poll_interval_ms=self.poll_interval_ms,
        )
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=f"{self.name}-loop")
        self._thread.start()
        logger.info("Executor %s started (max_parallel=%d, poll=%dms)", self.name, self.max_parallel_tasks, self.poll_interval_ms)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling. In-flight runners are left to finish."""
        self.state_store.update(status="stopped")
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout if timeout is not None else self.poll_interval_ms / 1000 + 5)
        self._thread = None
        logger.info("Executor %s stopped", self.name)

    def pause(self) -> None:
        state = self.state_store.get()
        if state.status == "stopped":
            raise TaskStateError("executor is stopped")
        self.state_store.update(status="paused")
        logger.info("Executor %s paused", self.name)

    def resume(self) -> None:
        state = self.state_store.get()
        if state.status != "paused":
            raise TaskStateError(f"executor is {state.status}, not paused")
        self.state_store.update(status="running")
        logger.info("Executor %s resumed", self.name)

    def get_status(self):
        return self.state_store.get()

    def in_flight(self) -> List[str]:
        with self._lock:
            return list(self._inflight)

    def on_task_event(self, callback: EventCallback) -> Callable[[], None]:
        return self.events.subscribe(callback)

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until this executor has no runner in flight."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._inflight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def recover_interrupted(self) -> int:
        """Return tasks left ``running`` by a previous process to ``pending``.

        Only safe when no other executor shares the store.
        """
        count = 0
        for task in self.store.list_tasks(status=RUNNING):
            if task.task_id in self.in_flight():
                continue
            if self.store.update_task(task.task_id, {"status": PENDING, "started_at": None}, expected_status=RUNNING):
                count += 1
        self.state_store.update(running_task_ids=[], current_task_id=None)
        if count:
            logger.warning("Recovered %d interrupted tasks", count)
        return count

    # ── task operations ──────────────────────────────────────

    def submit_task(self, fields: Dict[str, Any]) -> Task:
        task = self.store.create_task(fields)
        self._emit("created", task)
        return task

    def provide_operator_input(self, task_id: str, operator_input: str) -> Task:
        updated = self.store.update_task_where(
            task_id,
            lambda t: t.waiting_for_input and t.status not in TERMINAL_STATUSES,
            {"operator_input": operator_input, "waiting_for_input": False, "status": PENDING},
        )
        if updated is None:
            raise TaskStateError(f"task {task_id} is not waiting for input")
        logger.info("Operator input received for %s", task_id)
        self._emit("resumed", updated)
        return updated

    def request_operator_input(self, task_id: str, prompt: str) -> Task:
        updated = self.store.update_task_where(
            task_id,
            lambda t: t.status not in TERMINAL_STATUSES,
            {"waiting_for_input": True, "input_prompt": prompt, "status": WAITING_INPUT},
        )
        if updated is None:
            raise TaskStateError(f"task {task_id} is already finished")
        self._release(task_id)
        self._emit("waiting_input", updated, detail={"prompt": prompt})
        return updated

    def interrupt_task(self, task_id: str) -> Task:
        """Cancel a task. Advisory to a busy runner, final for the queue."""
        updated = self.store.update_task_where(
            task_id,
            lambda t: t.status not in TERMINAL_STATUSES,
            {"status": CANCELLED, "waiting_for_input": False, "completed_at": self.clock()},
        )
        if updated is None:
            raise TaskStateError(f"task {task_id} is already finished")
        self._release(task_id)
        logger.info("Task %s cancelled", task_id)
        self._emit("cancelled", updated)
        self._fail_dependents(task_id)
        return updated

    def prioritize_task(self, task_id: str) -> Task:
        others = [t.priority for t in self.store.snapshot() if not t.is_terminal and t.task_id != task_id]
        current = self.store.get_task(task_id)
        if current is None:
            raise NotFoundError("task", task_id)
        base = max(others + [current.priority])
        updated = self.store.update_task_where(
            task_id,
            lambda t: t.status not in TERMINAL_STATUSES,
            {"priority": base + PRIORITY_BOOST},
        )
        if updated is None:
            raise TaskStateError(f"task {task_id} is already finished")
        self._emit("prioritized", updated, detail={"priority": updated.priority})
        return updated

    def spawn_subtasks(self, parent_id: str, subtasks: List[Dict[str, Any]]) -> List[Task]:
        parent = self.store.get_task(parent_id)
        if parent is None:
            raise NotFoundError("task", parent_id)
        fields_list = []
        for sub in subtasks:
            fields = dict(sub)
            fields["parent_id"] = parent_id
            fields.setdefault("task_type", "action")
            fields.setdefault("priority", parent.priority)
            if parent.chat_id:
                fields.setdefault("chat_id", parent.chat_id)
            fields_list.append(fields)
        created = self.store.create_tasks(fields_list)
        self._emit("spawned_subtasks", parent, detail={"task_ids": [t.task_id for t in created]})
        return created

    # ── poll cycle ───────────────────────────────────────────

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as exc:  # noqa: BLE001
                logger.error("Executor poll error: %s", exc)
            self._stop_event.wait(self.poll_interval_ms / 1000)

    def poll_once(self) -> List[str]:
        """Run one decision cycle. Returns the IDs dispatched."""
        now = self.clock()
        self._check_timeouts(now)
        if self.state_store.get().status != "running":
            return []
        self._refresh_dependency_labels()

        snapshot = self.store.snapshot()
        by_id = {t.task_id: t for t in snapshot}
        running_by_group: Dict[str, int] = {}
        for task in snapshot:
            if task.status == RUNNING and task.group_key:
                running_by_group[task.group_key] = running_by_group.get(task.group_key, 0) + 1

        with self._lock:
            slots = self.max_parallel_tasks - len(self._inflight)

        dispatched: List[str] = []
        for task in snapshot:
            if slots <= 0:
                break
            if not self._eligible(task, by_id, now):
                continue
            group = task.group_key
            if group:
                running = running_by_group.get(group, 0)
                if task.execution_mode == "sequential" and running > 0:
                    continue
                if task.max_parallel and running >= task.max_parallel:
                    continue
            claimed = self.store.claim_task(task.task_id, {"started_at": now})
            if claimed is None:
                logger.debug("Lost claim on %s", task.task_id)
                continue
            if group:
                running_by_group[group] = running_by_group.get(group, 0) + 1
            self._dispatch(claimed)
            dispatched.append(claimed.task_id)
            slots -= 1
        return dispatched

    @staticmethod
    def _eligible(task: Task, by_id: Dict[str, Task], now: datetime) -> bool:
        if task.status != PENDING or task.waiting_for_input:
            return False
        if task.not_before and task.not_before > now:
            return False
        for dep_id in task.dependencies:
            dep = by_id.get(dep_id)
            if dep is None or dep.status != COMPLETED:
                return False
        return True

    def _refresh_dependency_labels(self) -> None:
        snapshot = self.store.snapshot()
        status = {t.task_id: t.status for t in snapshot}
        for task in snapshot:
            if task.status not in (PENDING, WAITING_DEPENDENCY) or not task.dependencies:
                continue
            dep_states = [status.get(dep_id) for dep_id in task.dependencies]
            blocked = [d for d, s in zip(task.dependencies, dep_states) if s is None or s in (FAILED, CANCELLED)]
            if blocked:
                self._fail_dependency(task.task_id, blocked[0])
            elif all(s == COMPLETED for s in dep_states):
                if task.status == WAITING_DEPENDENCY:
                    self.store.update_task(task.task_id, {"status": PENDING}, expected_status=WAITING_DEPENDENCY)
            elif task.status == PENDING:
                self.store.update_task(task.task_id, {"status": WAITING_DEPENDENCY}, expected_status=PENDING)

    def _check_timeouts(self, now: datetime) -> None:
        for task in self.store.list_tasks(status=RUNNING):
            if not task.timeout_seconds or not task.started_at:
                continue
            elapsed = (now - task.started_at).total_seconds()
            if elapsed <= task.timeout_seconds:
                continue
            updated = self.store.update_task(
                task.task_id,
                {
                    "status": FAILED,
                    "error": f"Task timed out after {task.timeout_seconds}s",
                    "error_code": ERROR_TIMEOUT,
                    "completed_at": now,
                    "actual_duration": int(elapsed),
                },
                expected_status=RUNNING,
            )
            if updated is None:
                continue
            logger.warning("Task %s timed out after %ds", task.task_id, int(elapsed))
            self._release(task.task_id)
            self.state_store.increment(failed=1)
            self._emit("timeout", updated)
            self._fail_dependents(task.task_id)

    # ── dispatch and outcomes ────────────────────────────────

    def _dispatch(self, task: Task) -> None:
        context = TaskContext(
            task_id=task.task_id,
            store=self.store,
            operator_input=task.operator_input,
            attempt=task.retry_count,
        )
        entry = _InFlight(task_id=task.task_id, context=context)
        thread = threading.Thread(target=self._run_task, args=(task, context), daemon=True, name=f"task-{task.task_id}")
        entry.thread = thread
        with self._lock:
            self._inflight[task.task_id] = entry
        self.state_store.add_running(task.task_id)
        logger.info("Dispatching %s (%s, priority=%d, attempt=%d)", task.task_id, task.task_type, task.priority, task.retry_count + 1)
        self._emit("started", task)
        thread.start()

    def _run_task(self, task: Task, context: TaskContext) -> None:
        try:
            if task.condition:
                try:
                    if task.condition_result is None:
                        result = bool(self.condition_evaluator(task.condition, task, self.store))
                        self.store.update_task_where(task.task_id, self._same_attempt(task.claim_token), {"condition_result": result})
                    else:
                        result = task.condition_result
                except Exception as exc:  # noqa: BLE001
                    self._handle_failure(task, f"Condition error: {exc}", ERROR_CONDITION)
                    return
                if not result:
                    self._handle_success(task, {"skipped": True, "reason": "condition not met"}, skipped=True)
                    return

            runner = self.runners.get(task.task_type)
            if runner is None:
                self._handle_failure(task, f"No runner registered for task type: {task.task_type}", ERROR_NO_RUNNER)
                return
            output = runner(task, context)
            self._handle_success(task, output)
        except InputRequired as req:
            self._handle_input_request(task, req.prompt)
        except Exception as exc:  # noqa: BLE001
            logger.error("Task %s runner failed: %s", task.task_id, exc)
            self._handle_failure(task, str(exc) or exc.__class__.__name__, ERROR_RUNNER)
        finally:
            self._release(task.task_id, cancel=False, context=context)

    def _duration(self, task: Optional[Task], now: datetime) -> Optional[int]:
        if task is None or task.started_at is None:
            return None
        return max(0, int((now - task.started_at).total_seconds()))

    @staticmethod
    def _same_attempt(claim_token: Optional[str]) -> Callable[[Task], bool]:
        return lambda t: t.status == RUNNING and t.claim_token == claim_token

    def _handle_success(self, task: Task, output: Any, skipped: bool = False) -> None:
        task_id = task.task_id
        now = self.clock()
        updated = self.store.update_task_where(
            task_id,
            self._same_attempt(task.claim_token),
            {
                "status": COMPLETED,
                "output": output,
                "error": None,
                "error_code": None,
                "completed_at": now,
                "actual_duration": self._duration(task, now),
            },
        )
        if updated is None:
            logger.info("Discarding result of %s: attempt no longer current", task_id)
            return
        self.state_store.increment(processed=1)
        self._unlock_dependents(task_id)
        logger.info("Task %s %s", task_id, "skipped (condition not met)" if skipped else "completed")
        self._emit("skipped" if skipped else "completed", updated)

    def _backoff(self, retry_count: int) -> float:
        if self.retry_backoff_seconds <= 0:
            return 0.0
        return min(self.retry_backoff_seconds * (2 ** (retry_count - 1)), self.retry_backoff_max_seconds)

    def _handle_failure(self, task: Task, error: str, error_code: str) -> None:
        task_id = task.task_id
        now = self.clock()
        current = self.store.get_task(task_id)
        same_attempt = self._same_attempt(task.claim_token)
        if current is None or not same_attempt(current):
            logger.info("Discarding failure of %s: attempt no longer current", task_id)
            return

        if current.retry_count < current.max_retries:
            retry_count = current.retry_count + 1
            delay = self._backoff(retry_count)
            updated = self.store.update_task_where(
                task_id,
                same_attempt,
                {
                    "status": PENDING,
                    "retry_count": retry_count,
                    "error": error,
                    "error_code": error_code,
                    "started_at": None,
                    "not_before": now + timedelta(seconds=delay) if delay > 0 else None,
                },
            )
            if updated is None:
                return
            logger.warning("Task %s failed (attempt %d/%d), retrying in %.1fs: %s",
                           task_id, retry_count, current.max_retries + 1, delay, error)
            self._emit("retry", updated, detail={"retry_count": retry_count, "delay_seconds": delay})
            return

        updated = self.store.update_task_where(
            task_id,
            same_attempt,
            {
                "status": FAILED,
                "error": error,
                "error_code": error_code,
                "completed_at": now,
                "actual_duration": self._duration(current, now),
            },
        )
        if updated is None:
            return
        self.state_store.increment(failed=1)
        logger.error("Task %s failed after %d retries: %s", task_id, current.retry_count, error)
        self._emit("failed", updated)
        self._fail_dependents(task_id)

    def _handle_input_request(self, task: Task, prompt: str) -> None:
        updated = self.store.update_task_where(
            task.task_id,
            self._same_attempt(task.claim_token),
            {"status": WAITING_INPUT, "waiting_for_input": True, "input_prompt": prompt, "operator_input": None},
        )
        if updated is None:
            return
        logger.info("Task %s waiting for operator input: %s", task.task_id, prompt[:80])
        self._emit("waiting_input", updated, detail={"prompt": prompt})

    def _unlock_dependents(self, task_id: str) -> None:
        for dependent in self.store.get_tasks_by_dependency(task_id):
            if dependent.status == WAITING_DEPENDENCY and self.store.dependencies_met(dependent):
                self.store.update_task(dependent.task_id, {"status": PENDING}, expected_status=WAITING_DEPENDENCY)

    def _fail_dependency(self, task_id: str, dep_id: str) -> None:
        updated = self.store.update_task_where(
            task_id,
            lambda t: t.status in (PENDING, WAITING_DEPENDENCY),
            {
                "status": FAILED,
                "error": f"Dependency {dep_id} did not complete",
                "error_code": ERROR_DEPENDENCY,
                "completed_at": self.clock(),
            },
        )
        if updated is None:
            return
        logger.warning("Task %s failed: dependency %s did not complete", task_id, dep_id)
        self._emit("failed", updated)
        self._fail_dependents(task_id)

    def _fail_dependents(self, task_id: str) -> None:
        for dependent in self.store.get_tasks_by_dependency(task_id):
            if dependent.status in (PENDING, WAITING_DEPENDENCY):
                self._fail_dependency(dependent.task_id, task_id)

    def _release(self, task_id: str, cancel: bool = True, context: Optional[TaskContext] = None) -> None:
        """Drop *task_id* from the in-flight set.

        With *context*, only the dispatch that owns that context is dropped;
        a later dispatch of the same task is left alone.
        """
        with self._idle:
            entry = self._inflight.get(task_id)
            if context is not None and (entry is None or entry.context is not context):
                return
            if entry is not None:
                del self._inflight[task_id]
                if cancel:
                    entry.context.cancelled.set()
            self._idle.notify_all()
        self.state_store.remove_running(task_id)

    def _emit(self, event_type: str, task: Task, detail: Optional[Dict[str, Any]] = None) -> None:
        self.events.emit(TaskEvent(
            event_type=event_type,
            task_id=task.task_id,
            status=task.status,
            error=task.error if event_type in ("failed", "retry", "timeout") else None,
            error_code=task.error_code if event_type in ("failed", "retry", "timeout") else None,
            schedule_id=task.schedule_id,
            trigger_id=task.trigger_id,
            workflow_run_id=task.workflow_run_id,
            detail=detail or {},
        ))
