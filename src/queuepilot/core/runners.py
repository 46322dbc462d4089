"""Task runners.

A runner is any callable ``runner(task, context) -> output``. The return
value becomes the task's ``output``; raising marks the attempt as failed
(and eligible for retry); raising ``InputRequired`` (or calling
``context.request_input``) suspends the task until an operator answers.

Runners are looked up by ``task_type`` in a ``RunnerRegistry``. The
built-in set covers the non-LLM types; ``research`` and ``analysis`` need
a runner registered by the embedding application.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import httpx

from queuepilot.core.errors import InputRequired
from queuepilot.core.models import Task

if TYPE_CHECKING:
    from queuepilot.core.store import TaskStore

logger = logging.getLogger("queuepilot.runners")

MAX_BODY_CHARS = 20000


@dataclass
class TaskContext:
    """What a runner gets besides the task itself."""
    task_id: str
    store: Optional["TaskStore"] = None
    cancelled: threading.Event = field(default_factory=threading.Event)
    operator_input: Optional[str] = None
    attempt: int = 0

    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def request_input(self, prompt: str) -> None:
        """Suspend the task until ``provide_operator_input`` is called."""
        raise InputRequired(prompt)

    def children(self) -> List[Task]:
        if self.store is None:
            return []
        return self.store.get_tasks_by_parent_id(self.task_id)

    def dependency_outputs(self, task: Task) -> Dict[str, Any]:
        if self.store is None:
            return {}
        outputs: Dict[str, Any] = {}
        for dep_id in task.dependencies:
            dep = self.store.get_task(dep_id)
            if dep is not None:
                outputs[dep_id] = dep.output
        return outputs


Runner = Callable[[Task, TaskContext], Any]


class RunnerRegistry:
    def __init__(self, runners: Optional[Dict[str, Runner]] = None, include_builtins: bool = True) -> None:
        self._runners: Dict[str, Runner] = {}
        self._lock = threading.Lock()
        if include_builtins:
            for task_type, runner in BUILTIN_RUNNERS.items():
                self._runners[task_type] = runner
        for task_type, runner in (runners or {}).items():
            self._runners[task_type] = runner

    def register(self, task_type: str, runner: Runner) -> None:
        with self._lock:
            self._runners[task_type] = runner
        logger.info("Runner registered for task type %s", task_type)

    def unregister(self, task_type: str) -> None:
        with self._lock:
            self._runners.pop(task_type, None)

    def get(self, task_type: str) -> Optional[Runner]:
        with self._lock:
            return self._runners.get(task_type)

    def task_types(self) -> List[str]:
        with self._lock:
            return sorted(self._runners)


# ── Built-in runners ─────────────────────────────────────────


def _input_dict(task: Task) -> Dict[str, Any]:
    return task.input if isinstance(task.input, dict) else {}


def run_action(task: Task, context: TaskContext) -> Any:
    if context.operator_input is not None:
        return {"message": f'Action "{task.title}" acknowledged', "input": task.input,
                "operator_input": context.operator_input}
    return {"message": f'Action "{task.title}" acknowledged', "input": task.input}


def run_fetch(task: Task, context: TaskContext) -> Any:
    """GET ``input.url`` when present; otherwise echo the input."""
    params = _input_dict(task)
    url = params.get("url")
    if not url:
        return {"message": f'Fetch task "{task.title}" has no url', "input": task.input}
    timeout = float(params.get("timeout", 15.0))
    with httpx.Client(timeout=timeout, follow_redirects=True) as client:
        resp = client.get(url, headers=params.get("headers") or None)
    resp.raise_for_status()
    content_type = resp.headers.get("content-type", "")
    if "json" in content_type:
        body: Any = resp.json()
    else:
        body = resp.text[:MAX_BODY_CHARS]
    return {"url": str(resp.url), "status_code": resp.status_code, "content_type": content_type, "body": body}


def run_transform(task: Task, context: TaskContext) -> Any:
    """Project ``input.data`` onto ``input.fields`` (dict or list of dicts)."""
    params = _input_dict(task)
    data = params.get("data", task.input)
    fields = params.get("fields")
    if fields:
        if isinstance(data, dict):
            data = {k: data.get(k) for k in fields}
        elif isinstance(data, list):
            data = [{k: item.get(k) for k in fields} if isinstance(item, dict) else item for item in data]
    return {"message": f'Transform task "{task.title}" completed', "input": task.input, "transformed": data}


def run_validate(task: Task, context: TaskContext) -> Any:
    params = _input_dict(task)
    data = params.get("data")
    required = params.get("required") or []
    missing = [key for key in required if not isinstance(data, dict) or key not in data]
    return {"message": f'Validation task "{task.title}" completed', "valid": not missing, "missing": missing}


def run_notify(task: Task, context: TaskContext) -> Any:
    """Log the notification; POST it to ``input.webhook_url`` when given."""
    params = _input_dict(task)
    message = params.get("message") or task.description or task.title
    logger.info("[notify] %s: %s", task.title, message)
    webhook_url = params.get("webhook_url")
    if webhook_url:
        with httpx.Client(timeout=10.0) as client:
            resp = client.post(webhook_url, json={"title": task.title, "message": message, "task_id": task.task_id})
        resp.raise_for_status()
    return {"message": f"Notification sent: {task.title}", "notified": True}


def run_synthesis(task: Task, context: TaskContext) -> Any:
    """Collect outputs of children and dependencies into one record."""
    sources = [child.output for child in context.children() if child.output is not None]
    sources.extend(v for v in context.dependency_outputs(task).values() if v is not None)
    return {"title": task.title, "goal": task.description or None, "sources": sources, "count": len(sources)}


BUILTIN_RUNNERS: Dict[str, Runner] = {
    "action": run_action,
    "fetch": run_fetch,
    "transform": run_transform,
    "validate": run_validate,
    "notify": run_notify,
    "synthesis": run_synthesis,
}
