from __future__ import annotations


class QueueError(Exception):
    """Base class for queue errors surfaced to callers."""


class ValidationError(QueueError, ValueError):
    """Rejected input: bad cron expression, missing template fields, bad dependencies."""


class NotFoundError(QueueError, KeyError):
    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id

    def __str__(self) -> str:
        return self.args[0]


class TaskStateError(QueueError):
    """The task is not in a state that allows the requested operation."""


class InputRequired(Exception):
    """Raised by a runner to suspend its task until an operator answers *prompt*."""

    def __init__(self, prompt: str) -> None:
        super().__init__(prompt)
        self.prompt = prompt
