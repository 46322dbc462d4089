"""Trigger matching: inbound events become tasks or workflow runs.

Every entry point returns a ``TriggerResult`` instead of raising for the
expected rejections (unknown trigger, disabled trigger, bad webhook
secret), so the HTTP layer can map them to status codes directly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import hmac
import logging
import re
import threading
from typing import Any, Dict, List, Optional

from queuepilot.core.audit import log_event
from queuepilot.core.definitions import TriggerStore, WorkflowStore
from queuepilot.core.errors import NotFoundError, ValidationError
from queuepilot.core.models import Task, Trigger
from queuepilot.core.store import TaskStore
from queuepilot.core.workflows import run_workflow

logger = logging.getLogger("queuepilot.triggers")

DEFAULT_TEMPLATE_PRIORITY = 5

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class TriggerResult:
    success: bool
    task_id: Optional[str] = None
    task_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    duplicate: bool = False
    trigger_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "task_ids": list(self.task_ids),
            "error": self.error,
            "error_code": self.error_code,
            "duplicate": self.duplicate,
            "trigger_id": self.trigger_id,
        }


def fill_placeholders(text: str, context: Dict[str, Any]) -> str:
    return _PLACEHOLDER.sub(lambda m: str(context.get(m.group(1)) or ""), text)


def _search(pattern: Optional[str], text: Optional[str]) -> bool:
    return bool(re.search(pattern, text or "", re.IGNORECASE)) if pattern else True


def matches_email(trigger: Trigger, sender: str, subject: str, snippet: str = "") -> bool:
    if trigger.sender_filter and sender and not _search(trigger.sender_filter, sender):
        return False
    if trigger.subject_filter and subject and not _search(trigger.subject_filter, subject):
        return False
    if trigger.pattern and not _search(trigger.pattern, f"{subject or ''} {snippet or ''}"):
        return False
    return True


def matches_sms(trigger: Trigger, sender: str, body: str) -> bool:
    if trigger.sender_filter and sender and not _search(trigger.sender_filter, sender):
        return False
    return _search(trigger.pattern, body)


class TriggerService:
    def __init__(
        self,
        triggers: TriggerStore,
        store: TaskStore,
        workflows: Optional[WorkflowStore] = None,
        data_dir: Optional[str] = None,
    ) -> None:
        self.triggers = triggers
        self.store = store
        self.workflows = workflows
        self.data_dir = data_dir
        # Serializes idempotency check + fire + record
        self._lock = threading.Lock()

    # ── firing ───────────────────────────────────────────────

    def fire_trigger(
        self,
        trigger: Trigger,
        context: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> List[Task]:
        """Materialize *trigger* with *context* and update its stats."""
        tags: Dict[str, Any] = {"trigger_id": trigger.trigger_id}
        if trigger.workflow_id:
            if self.workflows is None:
                raise ValidationError("no workflow store configured")
            tasks = run_workflow(self.workflows, self.store, trigger.workflow_id, context, tags)
        elif trigger.task_template:
            template = dict(trigger.task_template)
            template_input = template.get("input")
            fields = dict(template)
            fields["title"] = fill_placeholders(template["title"], context)
            if trigger.priority is not None:
                fields["priority"] = trigger.priority
            elif template.get("priority") is None:
                fields["priority"] = DEFAULT_TEMPLATE_PRIORITY
            fields["input"] = {**template_input, **context} if isinstance(template_input, dict) else context
            fields.update(tags)
            tasks = [self.store.create_task(fields)]
        else:
            raise ValidationError(f"trigger {trigger.trigger_id} has nothing to fire")

        first_id = tasks[0].task_id if tasks else None
        self.triggers.record_fire(trigger.trigger_id, first_id, idempotency_key)
        logger.info("Trigger fired: %s (%s) -> %d task(s)", trigger.name, trigger.trigger_id, len(tasks))
        if self.data_dir:
            log_event(self.data_dir, "trigger.fired", {
                "trigger_id": trigger.trigger_id,
                "source": context.get("source"),
                "task_ids": [t.task_id for t in tasks],
            })
        return tasks

    def _fire_result(self, trigger: Trigger, context: Dict[str, Any], idempotency_key: Optional[str] = None) -> TriggerResult:
        try:
            tasks = self.fire_trigger(trigger, context, idempotency_key)
        except (ValidationError, NotFoundError) as exc:
            logger.error("Trigger %s failed to fire: %s", trigger.trigger_id, exc)
            return TriggerResult(False, error=str(exc), error_code="invalid", trigger_id=trigger.trigger_id)
        ids = [t.task_id for t in tasks]
        return TriggerResult(True, task_id=ids[0] if ids else None, task_ids=ids, trigger_id=trigger.trigger_id)

    def _lookup(self, trigger_id: str) -> tuple[Optional[Trigger], Optional[TriggerResult]]:
        trigger = self.triggers.get(trigger_id)
        if trigger is None:
            return None, TriggerResult(False, error="Trigger not found", error_code="not_found", trigger_id=trigger_id)
        if not trigger.enabled:
            return None, TriggerResult(False, error="Trigger is disabled", error_code="disabled", trigger_id=trigger_id)
        return trigger, None

    # ── entry points ─────────────────────────────────────────

    def manual_trigger(self, trigger_id: str, payload: Optional[Dict[str, Any]] = None) -> TriggerResult:
        trigger, rejection = self._lookup(trigger_id)
        if rejection:
            return rejection
        return self._fire_result(trigger, {"source": "manual", **(payload or {})})

    def handle_webhook(
        self,
        trigger_id: str,
        payload: Any,
        provided_secret: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> TriggerResult:
        trigger, rejection = self._lookup(trigger_id)
        if rejection:
            return rejection
        if trigger.webhook_secret:
            if not provided_secret or not hmac.compare_digest(
                trigger.webhook_secret.encode("utf-8"), provided_secret.encode("utf-8")
            ):
                logger.warning("Webhook %s rejected: invalid secret", trigger_id)
                return TriggerResult(False, error="Invalid webhook secret", error_code="auth", trigger_id=trigger_id)

        with self._lock:
            if idempotency_key:
                existing = self.triggers.lookup_delivery(trigger_id, idempotency_key)
                if existing:
                    logger.info("Webhook %s duplicate delivery %s", trigger_id, idempotency_key)
                    return TriggerResult(True, task_id=existing, task_ids=[existing], duplicate=True, trigger_id=trigger_id)
            return self._fire_result(trigger, {"source": "webhook", "payload": payload}, idempotency_key)

    def process_email(self, sender: str, subject: str, snippet: str = "", email_id: Optional[str] = None) -> List[TriggerResult]:
        """Fire every enabled email trigger the message matches."""
        results = []
        for trigger in self.triggers.list(trigger_type="email", enabled=True):
            if matches_email(trigger, sender, subject, snippet):
                results.append(self._fire_result(trigger, {
                    "source": "email",
                    "email_id": email_id,
                    "from": sender,
                    "subject": subject,
                    "snippet": snippet,
                }))
        return results

    def process_sms(self, sender: str, body: str) -> List[TriggerResult]:
        results = []
        for trigger in self.triggers.list(trigger_type="sms", enabled=True):
            if matches_sms(trigger, sender, body):
                results.append(self._fire_result(trigger, {"source": "sms", "from": sender, "body": body}))
        return results

    def check_prompt(self, prompt: str) -> List[TriggerResult]:
        """Fire keyword triggers whose pattern occurs in *prompt*."""
        results = []
        for trigger in self.triggers.list(trigger_type="prompt_keyword", enabled=True):
            if trigger.pattern and _search(trigger.pattern, prompt):
                results.append(self._fire_result(trigger, {
                    "source": "prompt",
                    "prompt": prompt,
                    "matched_pattern": trigger.pattern,
                }))
        return results
