"""Workflow instantiation: a workflow's steps become one batch of tasks."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
import uuid

from queuepilot.core.definitions import WorkflowStore
from queuepilot.core.errors import NotFoundError, ValidationError
from queuepilot.core.models import Task, Workflow
from queuepilot.core.store import TaskStore

logger = logging.getLogger("queuepilot.workflows")

# Step keys copied onto the task as-is
_STEP_PASSTHROUGH = ("description", "condition", "max_retries", "estimated_duration", "chat_id")


def _merge_input(step_input: Any, run_input: Any) -> Any:
    if isinstance(step_input, dict) and isinstance(run_input, dict):
        return {**run_input, **step_input}
    return step_input if step_input is not None else run_input


def build_step_tasks(
    workflow: Workflow,
    run_input: Any = None,
    tags: Optional[Dict[str, Any]] = None,
) -> tuple[List[Dict[str, Any]], List[List[int]], str]:
    """Return ``(fields_list, batch_dependencies, workflow_run_id)`` for *workflow*."""
    run_id = f"run-{uuid.uuid4().hex[:12]}"
    count = len(workflow.steps)
    fields_list: List[Dict[str, Any]] = []
    batch_deps: List[List[int]] = []
    for index, step in enumerate(workflow.steps):
        mode = step.get("execution_mode") or workflow.default_execution_mode
        priority = step.get("priority")
        fields: Dict[str, Any] = {
            "title": step["title"],
            "task_type": step.get("task_type") or "action",
            "priority": priority if priority is not None else count - index,
            "execution_mode": mode,
            "input": _merge_input(step.get("input"), run_input),
            "workflow_id": workflow.workflow_id,
            "workflow_run_id": run_id,
            "max_parallel": workflow.max_parallel_tasks,
            "timeout_seconds": step.get("timeout_seconds") or workflow.timeout_seconds,
        }
        for key in _STEP_PASSTHROUGH:
            if step.get(key) is not None:
                fields[key] = step[key]
        fields.update(tags or {})
        fields_list.append(fields)

        if step.get("depends_on") is not None:
            batch_deps.append(list(step["depends_on"]))
        elif mode == "sequential" and index > 0:
            batch_deps.append([index - 1])
        else:
            batch_deps.append([])
    return fields_list, batch_deps, run_id


def instantiate_workflow(
    store: TaskStore,
    workflow: Workflow,
    run_input: Any = None,
    tags: Optional[Dict[str, Any]] = None,
) -> List[Task]:
    """Create one task per step, sharing ``workflow_id`` and a fresh run ID."""
    if not workflow.enabled:
        raise ValidationError(f"workflow {workflow.workflow_id} is disabled")
    if not workflow.steps:
        raise ValidationError(f"workflow {workflow.workflow_id} has no steps")
    fields_list, batch_deps, run_id = build_step_tasks(workflow, run_input, tags)
    tasks = store.create_tasks(fields_list, batch_dependencies=batch_deps)
    logger.info("Workflow %s v%d instantiated as %s (%d tasks)", workflow.workflow_id, workflow.version, run_id, len(tasks))
    return tasks


def run_workflow(
    workflows: WorkflowStore,
    store: TaskStore,
    workflow_id: str,
    run_input: Any = None,
    tags: Optional[Dict[str, Any]] = None,
) -> List[Task]:
    workflow = workflows.get(workflow_id)
    if workflow is None:
        raise NotFoundError("workflow", workflow_id)
    return instantiate_workflow(store, workflow, run_input, tags)
