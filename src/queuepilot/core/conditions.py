"""Default condition evaluator.

Understands literals (``true``/``false``, ``yes``/``no``, ``1``/``0``) and
lookups of the form ``input.<key>``, ``output.<task_id>.<key>`` with an
optional ``not`` prefix. Anything else evaluates to ``True`` with a
warning, so an unrecognised condition never blocks a workflow. Pass a
custom callable to ``Executor`` for richer languages.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from queuepilot.core.errors import ValidationError
from queuepilot.core.models import Task

if TYPE_CHECKING:
    from queuepilot.core.store import TaskStore

logger = logging.getLogger("queuepilot.conditions")

ConditionEvaluator = Callable[[str, Task, "TaskStore"], bool]

_TRUE = {"true", "yes", "1"}
_FALSE = {"false", "no", "0"}

_MISSING = object()


def _lookup(value: Any, path: list[str]) -> Any:
    for key in path:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return _MISSING
    return value


def evaluate_condition(condition: str, task: Task, store: Optional["TaskStore"] = None) -> bool:
    text = condition.strip()
    negate = False
    if text.lower().startswith("not "):
        negate = True
        text = text[4:].strip()

    lowered = text.lower()
    if lowered in _TRUE:
        result = True
    elif lowered in _FALSE:
        result = False
    elif text.startswith("input."):
        value = _lookup(task.input, text[len("input."):].split("."))
        result = bool(value) if value is not _MISSING else False
    elif text.startswith("output."):
        parts = text[len("output."):].split(".")
        dep_id = parts[0]
        if dep_id not in task.dependencies:
            raise ValidationError(f"condition references {dep_id}, which is not a dependency")
        dep = store.get_task(dep_id) if store else None
        value = _lookup(dep.output, parts[1:]) if dep else _MISSING
        result = bool(value) if value is not _MISSING else False
    else:
        logger.warning("Unrecognised condition on task %s, assuming true: %s", task.task_id, condition)
        result = True
    return not result if negate else result
