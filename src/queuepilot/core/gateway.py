from __future__ import annotations

from contextlib import asynccontextmanager
import hmac
import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from queuepilot import __version__
from queuepilot.core import cron
from queuepilot.core.audit import generate_request_id, log_event, read_events
from queuepilot.core.config import Settings
from queuepilot.core.definitions import ScheduleStore, TriggerStore, WorkflowStore
from queuepilot.core.errors import NotFoundError, TaskStateError, ValidationError
from queuepilot.core.executor import Executor
from queuepilot.core.logging_config import setup_logging
from queuepilot.core.models import PAUSED, PENDING, TERMINAL_STATUSES, WAITING_DEPENDENCY
from queuepilot.core.rate_limit import RateLimiter
from queuepilot.core.runners import RunnerRegistry
from queuepilot.core.scheduler import CronScheduler
from queuepilot.core.state import ExecutorStateStore
from queuepilot.core.store import TaskStore
from queuepilot.core.task_events import EventBus
from queuepilot.core.triggers import TriggerService
from queuepilot.core.workflows import run_workflow

logger = logging.getLogger("queuepilot.gateway")

MAX_WEBHOOK_BYTES = 200000


# ---- request models ----

class TaskCreate(BaseModel):
    title: str
    task_type: str = "action"
    description: Optional[str] = None
    parent_id: Optional[str] = None
    chat_id: Optional[str] = None
    priority: Optional[int] = None
    status: Optional[str] = None
    execution_mode: Optional[str] = None
    dependencies: Optional[List[str]] = None
    condition: Optional[str] = None
    input: Any = None
    max_retries: Optional[int] = None
    timeout_seconds: Optional[int] = None
    max_parallel: Optional[int] = None
    estimated_duration: Optional[int] = None


class TaskPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    status: Optional[str] = None
    execution_mode: Optional[str] = None
    dependencies: Optional[List[str]] = None
    condition: Optional[str] = None
    input: Any = None
    max_retries: Optional[int] = None
    timeout_seconds: Optional[int] = None
    max_parallel: Optional[int] = None


class TaskBatch(BaseModel):
    tasks: List[TaskCreate]


class SubtaskRequest(BaseModel):
    subtasks: List[TaskCreate]


class OperatorInputRequest(BaseModel):
    input: str


class InputPromptRequest(BaseModel):
    prompt: str


class ScheduleCreate(BaseModel):
    name: str
    cron_expression: str
    description: Optional[str] = None
    timezone: Optional[str] = None
    task_template: Optional[Dict[str, Any]] = None
    workflow_id: Optional[str] = None
    enabled: Optional[bool] = None
    max_consecutive_failures: Optional[int] = None


class SchedulePatch(BaseModel):
    name: Optional[str] = None
    cron_expression: Optional[str] = None
    description: Optional[str] = None
    timezone: Optional[str] = None
    task_template: Optional[Dict[str, Any]] = None
    workflow_id: Optional[str] = None
    enabled: Optional[bool] = None
    max_consecutive_failures: Optional[int] = None


class CronRequest(BaseModel):
    expression: str
    timezone: str = "UTC"
    count: int = 5


class TriggerCreate(BaseModel):
    name: str
    trigger_type: str
    description: Optional[str] = None
    pattern: Optional[str] = None
    sender_filter: Optional[str] = None
    subject_filter: Optional[str] = None
    task_template: Optional[Dict[str, Any]] = None
    workflow_id: Optional[str] = None
    priority: Optional[int] = None
    webhook_secret: Optional[str] = None
    enabled: Optional[bool] = None


class TriggerPatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    pattern: Optional[str] = None
    sender_filter: Optional[str] = None
    subject_filter: Optional[str] = None
    task_template: Optional[Dict[str, Any]] = None
    workflow_id: Optional[str] = None
    priority: Optional[int] = None
    webhook_secret: Optional[str] = None
    enabled: Optional[bool] = None


class FireRequest(BaseModel):
    payload: Dict[str, Any] = {}


class EmailEvent(BaseModel):
    sender: str
    subject: str = ""
    snippet: str = ""
    email_id: Optional[str] = None


class SmsEvent(BaseModel):
    sender: str
    body: str


class PromptEvent(BaseModel):
    prompt: str


class WorkflowCreate(BaseModel):
    name: str
    steps: List[Dict[str, Any]]
    description: Optional[str] = None
    default_execution_mode: Optional[str] = None
    max_parallel_tasks: Optional[int] = None
    timeout_seconds: Optional[int] = None
    enabled: Optional[bool] = None


class WorkflowPatch(BaseModel):
    name: Optional[str] = None
    steps: Optional[List[Dict[str, Any]]] = None
    description: Optional[str] = None
    default_execution_mode: Optional[str] = None
    max_parallel_tasks: Optional[int] = None
    timeout_seconds: Optional[int] = None
    enabled: Optional[bool] = None


class WorkflowRunRequest(BaseModel):
    input: Any = None


def _fields(model: BaseModel) -> Dict[str, Any]:
    """Request fields with nulls dropped, so store defaults apply."""
    return model.model_dump(exclude_none=True)


_WEBHOOK_STATUS = {"auth": 401, "not_found": 404, "disabled": 409, "invalid": 400}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    settings = settings or Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)
    os.makedirs(settings.data_dir, exist_ok=True)

    data_dir = settings.data_dir
    store = TaskStore(
        store_path=os.path.join(data_dir, "tasks.json"),
        default_max_retries=settings.default_max_retries,
    )
    state_store = ExecutorStateStore(store_path=os.path.join(data_dir, "executor.json"))
    schedules = ScheduleStore(
        store_path=os.path.join(data_dir, "schedules.json"),
        default_timezone=settings.default_timezone,
    )
    trigger_store = TriggerStore(store_path=os.path.join(data_dir, "triggers.json"))
    workflows = WorkflowStore(store_path=os.path.join(data_dir, "workflows.json"))
    events = EventBus()
    runners = RunnerRegistry()
    executor = Executor(
        store,
        state_store,
        runners=runners,
        events=events,
        max_parallel_tasks=settings.max_parallel_tasks,
        poll_interval_ms=settings.poll_interval_ms,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        retry_backoff_max_seconds=settings.retry_backoff_max_seconds,
    )
    scheduler = CronScheduler(
        schedules,
        store,
        workflows=workflows,
        events=events,
        poll_seconds=settings.schedule_poll_seconds,
        data_dir=data_dir,
    )
    triggers = TriggerService(trigger_store, store, workflows=workflows, data_dir=data_dir)
    rate_limiter = RateLimiter(
        max_calls=settings.webhook_rate_limit_calls,
        window_seconds=settings.webhook_rate_limit_seconds,
    )

    def _require_token(authorization: Optional[str] = Header(default=None)) -> None:
        if not settings.api_token:
            return
        expected = f"Bearer {settings.api_token}"
        if not authorization or not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Invalid API token")

    auth = [Depends(_require_token)]

    def _audit(event_type: str, payload: Dict[str, Any]) -> None:
        log_event(data_dir, event_type, payload, request_id=generate_request_id())

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if settings.autostart:
            executor.recover_interrupted()
            executor.start()
            scheduler.start()
        yield
        executor.stop()
        scheduler.close()

    app = FastAPI(title="queuepilot", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.state_store = state_store
    app.state.executor = executor
    app.state.scheduler = scheduler
    app.state.triggers = triggers
    app.state.schedules = schedules
    app.state.trigger_store = trigger_store
    app.state.workflows = workflows
    app.state.runners = runners
    app.state.events = events

    # ---- error mapping ----

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(TaskStateError)
    async def _state_error(request: Request, exc: TaskStateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    def _task_or_404(task_id: str):
        task = store.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"task not found: {task_id}")
        return task

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status", dependencies=auth)
    def control_status() -> dict:
        return {
            "executor": executor.get_status().to_dict(),
            "in_flight": executor.in_flight(),
            "queue": store.get_queue_stats(),
            "runners": runners.task_types(),
            "schedules": len(schedules.list()),
            "triggers": len(trigger_store.list()),
            "workflows": len(workflows.list()),
        }

    @app.get("/audit", dependencies=auth)
    def audit_events(event_type: Optional[str] = None, limit: int = 100) -> dict:
        return {"events": read_events(data_dir, event_type=event_type, limit=limit)}

    @app.post("/control/start", dependencies=auth)
    def control_start() -> dict:
        executor.start()
        scheduler.start()
        _audit("executor.start", {})
        return executor.get_status().to_dict()

    @app.post("/control/stop", dependencies=auth)
    def control_stop() -> dict:
        executor.stop()
        scheduler.stop()
        _audit("executor.stop", {})
        return executor.get_status().to_dict()

    @app.post("/control/pause", dependencies=auth)
    def control_pause() -> dict:
        executor.pause()
        _audit("executor.pause", {})
        return executor.get_status().to_dict()

    @app.post("/control/resume", dependencies=auth)
    def control_resume() -> dict:
        executor.resume()
        _audit("executor.resume", {})
        return executor.get_status().to_dict()

    @app.get("/events", dependencies=auth)
    def recent_events(task_id: Optional[str] = None, limit: int = 50) -> dict:
        return {"events": [e.to_dict() for e in events.recent(limit, task_id=task_id)]}

    # ---- queue ----

    @app.get("/queue", dependencies=auth)
    def list_tasks(status: Optional[str] = None, chat_id: Optional[str] = None, limit: Optional[int] = None) -> dict:
        tasks = store.list_tasks(status=status, chat_id=chat_id, limit=limit)
        return {"tasks": [t.to_dict() for t in tasks]}

    @app.post("/queue", dependencies=auth)
    def create_task(req: TaskCreate) -> dict:
        task = executor.submit_task(_fields(req))
        _audit("task.create", {"task_id": task.task_id, "title": task.title})
        return task.to_dict()

    @app.post("/queue/batch", dependencies=auth)
    def create_tasks(req: TaskBatch) -> dict:
        tasks = store.create_tasks([_fields(t) for t in req.tasks])
        _audit("task.create_batch", {"task_ids": [t.task_id for t in tasks]})
        return {"tasks": [t.to_dict() for t in tasks]}

    @app.get("/queue/stats", dependencies=auth)
    def queue_stats() -> dict:
        return store.get_queue_stats()

    @app.get("/queue/next", dependencies=auth)
    def next_task() -> dict:
        task = store.get_next_pending_task()
        return {"task": task.to_dict() if task else None}

    @app.get("/queue/waiting", dependencies=auth)
    def waiting_tasks() -> dict:
        return {"tasks": [t.to_dict() for t in store.get_tasks_waiting_for_input()]}

    @app.post("/queue/purge", dependencies=auth)
    def purge_tasks(older_than_hours: float = 24) -> dict:
        purged = store.purge_finished(older_than_hours)
        _audit("task.purge", {"purged": purged, "older_than_hours": older_than_hours})
        return {"purged": purged}

    @app.get("/queue/{task_id}", dependencies=auth)
    def get_task(task_id: str) -> dict:
        return _task_or_404(task_id).to_dict()

    @app.get("/queue/{task_id}/children", dependencies=auth)
    def get_children(task_id: str) -> dict:
        _task_or_404(task_id)
        return {"tasks": [t.to_dict() for t in store.get_tasks_by_parent_id(task_id)]}

    @app.patch("/queue/{task_id}", dependencies=auth)
    def patch_task(task_id: str, req: TaskPatch) -> dict:
        fields = _fields(req)
        if "status" in fields and fields["status"] not in (PENDING, PAUSED):
            raise HTTPException(status_code=400, detail="status can only be set to pending or paused")
        editable = (PENDING, PAUSED, WAITING_DEPENDENCY)
        updated = store.update_task_where(task_id, lambda t: t.status in editable, fields)
        if updated is None:
            raise HTTPException(status_code=409, detail=f"task {task_id} cannot be edited in its current state")
        _audit("task.update", {"task_id": task_id, "fields": sorted(fields)})
        return updated.to_dict()

    @app.delete("/queue/{task_id}", dependencies=auth)
    def delete_task(task_id: str) -> dict:
        task = _task_or_404(task_id)
        if task.status not in TERMINAL_STATUSES and task.task_id in executor.in_flight():
            executor.interrupt_task(task_id)
        deleted = store.delete_task(task_id)
        _audit("task.delete", {"task_id": task_id, "deleted": deleted})
        return {"deleted": deleted}

    @app.post("/queue/{task_id}/input", dependencies=auth)
    def provide_input(task_id: str, req: OperatorInputRequest) -> dict:
        task = executor.provide_operator_input(task_id, req.input)
        _audit("task.input", {"task_id": task_id})
        return task.to_dict()

    @app.post("/queue/{task_id}/request-input", dependencies=auth)
    def request_input(task_id: str, req: InputPromptRequest) -> dict:
        return executor.request_operator_input(task_id, req.prompt).to_dict()

    @app.post("/queue/{task_id}/interrupt", dependencies=auth)
    def interrupt_task(task_id: str) -> dict:
        task = executor.interrupt_task(task_id)
        _audit("task.cancel", {"task_id": task_id})
        return task.to_dict()

    @app.post("/queue/{task_id}/prioritize", dependencies=auth)
    def prioritize_task(task_id: str) -> dict:
        task = executor.prioritize_task(task_id)
        _audit("task.prioritize", {"task_id": task_id, "priority": task.priority})
        return task.to_dict()

    @app.post("/queue/{task_id}/subtasks", dependencies=auth)
    def spawn_subtasks(task_id: str, req: SubtaskRequest) -> dict:
        tasks = executor.spawn_subtasks(task_id, [_fields(t) for t in req.subtasks])
        return {"tasks": [t.to_dict() for t in tasks]}

    # ---- schedules ----

    @app.get("/schedules", dependencies=auth)
    def list_schedules(enabled: Optional[bool] = None) -> dict:
        return {"schedules": [s.to_dict() for s in schedules.list(enabled=enabled)]}

    @app.post("/schedules", dependencies=auth)
    def create_schedule(req: ScheduleCreate) -> dict:
        schedule = schedules.create(_fields(req))
        _audit("schedule.create", {"schedule_id": schedule.schedule_id, "cron": schedule.cron_expression})
        return schedule.to_dict()

    @app.post("/cron/validate")
    def cron_validate(req: CronRequest) -> dict:
        result = cron.validate(req.expression)
        return {"valid": result.valid, "error": result.error}

    @app.post("/cron/describe")
    def cron_describe(req: CronRequest) -> dict:
        result = cron.validate(req.expression)
        if not result.valid:
            raise HTTPException(status_code=400, detail=result.error)
        runs = cron.next_run_times(req.expression, req.timezone, count=min(max(req.count, 0), 50))
        return {
            "expression": req.expression,
            "description": cron.describe(req.expression),
            "next_runs": [r.isoformat() for r in runs],
        }

    @app.get("/schedules/{schedule_id}", dependencies=auth)
    def get_schedule(schedule_id: str) -> dict:
        schedule = schedules.get(schedule_id)
        if schedule is None:
            raise HTTPException(status_code=404, detail=f"schedule not found: {schedule_id}")
        return schedule.to_dict()

    @app.patch("/schedules/{schedule_id}", dependencies=auth)
    def patch_schedule(schedule_id: str, req: SchedulePatch) -> dict:
        schedule = schedules.update(schedule_id, _fields(req))
        _audit("schedule.update", {"schedule_id": schedule_id})
        return schedule.to_dict()

    @app.delete("/schedules/{schedule_id}", dependencies=auth)
    def delete_schedule(schedule_id: str) -> dict:
        schedules.delete(schedule_id)
        _audit("schedule.delete", {"schedule_id": schedule_id})
        return {"deleted": schedule_id}

    @app.post("/schedules/{schedule_id}/run", dependencies=auth)
    def run_schedule(schedule_id: str) -> dict:
        tasks = scheduler.run_schedule(schedule_id)
        return {"tasks": [t.to_dict() for t in tasks]}

    # ---- triggers ----

    @app.get("/triggers", dependencies=auth)
    def list_triggers(trigger_type: Optional[str] = None, enabled: Optional[bool] = None) -> dict:
        items = trigger_store.list(trigger_type=trigger_type, enabled=enabled)
        return {"triggers": [t.to_dict(include_secret=False) for t in items]}

    @app.post("/triggers", dependencies=auth)
    def create_trigger(req: TriggerCreate) -> dict:
        trigger = trigger_store.create(_fields(req))
        _audit("trigger.create", {"trigger_id": trigger.trigger_id, "type": trigger.trigger_type})
        # The secret is only ever shown on creation
        return trigger.to_dict(include_secret=True)

    @app.post("/triggers/events/email", dependencies=auth)
    def email_event(req: EmailEvent) -> dict:
        results = triggers.process_email(req.sender, req.subject, req.snippet, req.email_id)
        return {"results": [r.to_dict() for r in results]}

    @app.post("/triggers/events/sms", dependencies=auth)
    def sms_event(req: SmsEvent) -> dict:
        return {"results": [r.to_dict() for r in triggers.process_sms(req.sender, req.body)]}

    @app.post("/triggers/events/prompt", dependencies=auth)
    def prompt_event(req: PromptEvent) -> dict:
        return {"results": [r.to_dict() for r in triggers.check_prompt(req.prompt)]}

    @app.get("/triggers/{trigger_id}", dependencies=auth)
    def get_trigger(trigger_id: str) -> dict:
        trigger = trigger_store.get(trigger_id)
        if trigger is None:
            raise HTTPException(status_code=404, detail=f"trigger not found: {trigger_id}")
        return trigger.to_dict(include_secret=False)

    @app.patch("/triggers/{trigger_id}", dependencies=auth)
    def patch_trigger(trigger_id: str, req: TriggerPatch) -> dict:
        trigger = trigger_store.update(trigger_id, _fields(req))
        _audit("trigger.update", {"trigger_id": trigger_id})
        return trigger.to_dict(include_secret=False)

    @app.delete("/triggers/{trigger_id}", dependencies=auth)
    def delete_trigger(trigger_id: str) -> dict:
        trigger_store.delete(trigger_id)
        _audit("trigger.delete", {"trigger_id": trigger_id})
        return {"deleted": trigger_id}

    @app.post("/triggers/{trigger_id}/fire", dependencies=auth)
    def fire_trigger(trigger_id: str, req: FireRequest) -> dict:
        result = triggers.manual_trigger(trigger_id, req.payload)
        if not result.success:
            raise HTTPException(status_code=_WEBHOOK_STATUS.get(result.error_code or "", 400), detail=result.error)
        return result.to_dict()

    # ---- webhooks ----

    @app.post("/webhooks/{trigger_id}")
    async def webhook(
        trigger_id: str,
        request: Request,
        x_webhook_secret: Optional[str] = Header(default=None),
        x_idempotency_key: Optional[str] = Header(default=None),
    ) -> dict:
        if not rate_limiter.allow(trigger_id):
            raise HTTPException(status_code=429, detail="rate limited")
        declared = request.headers.get("content-length")
        if declared:
            try:
                size = int(declared)
            except ValueError:
                raise HTTPException(status_code=400, detail="invalid content-length") from None
            if size > MAX_WEBHOOK_BYTES:
                raise HTTPException(status_code=413, detail="payload too large")
        body = await request.body()
        payload: Any = None
        if body:
            try:
                payload = await request.json()
            except ValueError:
                payload = body.decode("utf-8", errors="replace")
        result = triggers.handle_webhook(trigger_id, payload, x_webhook_secret, x_idempotency_key)
        if not result.success:
            raise HTTPException(status_code=_WEBHOOK_STATUS.get(result.error_code or "", 400), detail=result.error)
        return result.to_dict()

    # ---- workflows ----

    @app.get("/workflows", dependencies=auth)
    def list_workflows(enabled: Optional[bool] = None) -> dict:
        return {"workflows": [w.to_dict() for w in workflows.list(enabled=enabled)]}

    @app.post("/workflows", dependencies=auth)
    def create_workflow(req: WorkflowCreate) -> dict:
        workflow = workflows.create(_fields(req))
        _audit("workflow.create", {"workflow_id": workflow.workflow_id})
        return workflow.to_dict()

    @app.get("/workflows/{workflow_id}", dependencies=auth)
    def get_workflow(workflow_id: str) -> dict:
        workflow = workflows.get(workflow_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail=f"workflow not found: {workflow_id}")
        return workflow.to_dict()

    @app.patch("/workflows/{workflow_id}", dependencies=auth)
    def patch_workflow(workflow_id: str, req: WorkflowPatch) -> dict:
        workflow = workflows.update(workflow_id, _fields(req))
        _audit("workflow.update", {"workflow_id": workflow_id, "version": workflow.version})
        return workflow.to_dict()

    @app.delete("/workflows/{workflow_id}", dependencies=auth)
    def delete_workflow(workflow_id: str) -> dict:
        workflows.delete(workflow_id)
        _audit("workflow.delete", {"workflow_id": workflow_id})
        return {"deleted": workflow_id}

    @app.post("/workflows/{workflow_id}/run", dependencies=auth)
    def start_workflow(workflow_id: str, req: WorkflowRunRequest) -> dict:
        tasks = run_workflow(workflows, store, workflow_id, req.input)
        _audit("workflow.run", {"workflow_id": workflow_id, "task_ids": [t.task_id for t in tasks]})
        return {"workflow_run_id": tasks[0].workflow_run_id if tasks else None, "tasks": [t.to_dict() for t in tasks]}

    return app
