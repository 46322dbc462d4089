"""Tests for built-in runners and the default condition evaluator."""
from __future__ import annotations

import httpx
import pytest

from queuepilot.core import runners as runners_mod
from queuepilot.core.conditions import evaluate_condition
from queuepilot.core.errors import InputRequired, ValidationError
from queuepilot.core.models import Task
from queuepilot.core.runners import RunnerRegistry, TaskContext
from queuepilot.core.store import TaskStore


def _task(task_type: str = "action", **kw) -> Task:
    return Task(task_id="task-x", title="Job", task_type=task_type, **kw)


@pytest.fixture
def mock_http(monkeypatch):
    """Route every httpx.Client the runners open through a handler."""
    calls = []
    real_client = httpx.Client

    def install(handler):
        def recording(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return handler(request)

        monkeypatch.setattr(
            runners_mod.httpx, "Client",
            lambda **kw: real_client(transport=httpx.MockTransport(recording), **kw),
        )
        return calls

    return install


class TestRegistry:
    def test_builtins(self):
        assert RunnerRegistry().task_types() == ["action", "fetch", "notify", "synthesis", "transform", "validate"]

    def test_no_builtins(self):
        assert RunnerRegistry(include_builtins=False).task_types() == []

    def test_register_overrides(self):
        reg = RunnerRegistry()
        custom = lambda task, ctx: "mine"  # noqa: E731
        reg.register("action", custom)
        assert reg.get("action") is custom
        reg.unregister("action")
        assert reg.get("action") is None


class TestBuiltins:
    def test_action_echoes_input(self):
        out = runners_mod.run_action(_task(input={"a": 1}), TaskContext(task_id="task-x", operator_input="go"))
        assert out["input"] == {"a": 1}
        assert out["operator_input"] == "go"

    def test_transform_projects_fields(self):
        task = _task("transform", input={"data": [{"a": 1, "b": 2}, {"a": 3, "b": 4}], "fields": ["a"]})
        assert runners_mod.run_transform(task, TaskContext(task_id="task-x"))["transformed"] == [{"a": 1}, {"a": 3}]

    def test_validate_reports_missing(self):
        task = _task("validate", input={"data": {"a": 1}, "required": ["a", "b"]})
        out = runners_mod.run_validate(task, TaskContext(task_id="task-x"))
        assert out["valid"] is False
        assert out["missing"] == ["b"]

    def test_fetch_without_url(self):
        out = runners_mod.run_fetch(_task("fetch", input={}), TaskContext(task_id="task-x"))
        assert "no url" in out["message"]

    def test_fetch_json(self, mock_http):
        calls = mock_http(lambda request: httpx.Response(200, json={"ok": True}))
        out = runners_mod.run_fetch(_task("fetch", input={"url": "https://api.example.com/items"}), TaskContext(task_id="task-x"))
        assert out["status_code"] == 200
        assert out["body"] == {"ok": True}
        assert calls[0].method == "GET"

    def test_fetch_error_status_raises(self, mock_http):
        mock_http(lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(httpx.HTTPStatusError):
            runners_mod.run_fetch(_task("fetch", input={"url": "https://api.example.com/items"}), TaskContext(task_id="task-x"))

    def test_notify_posts_webhook(self, mock_http):
        calls = mock_http(lambda request: httpx.Response(204))
        task = _task("notify", input={"message": "done", "webhook_url": "https://hooks.example.com/x"})
        assert runners_mod.run_notify(task, TaskContext(task_id="task-x"))["notified"] is True
        assert calls[0].method == "POST"

    def test_synthesis_collects_children_and_dependencies(self):
        store = TaskStore()
        parent = store.create_task({"title": "report", "task_type": "synthesis"})
        child = store.create_task({"title": "part", "task_type": "action", "parent_id": parent.task_id})
        store.update_task(child.task_id, {"status": "completed", "output": {"part": 1}})
        out = runners_mod.run_synthesis(store.get_task(parent.task_id), TaskContext(task_id=parent.task_id, store=store))
        assert out["sources"] == [{"part": 1}]
        assert out["count"] == 1

    def test_request_input_raises(self):
        with pytest.raises(InputRequired) as info:
            TaskContext(task_id="task-x").request_input("Which account?")
        assert info.value.prompt == "Which account?"


class TestConditions:
    @pytest.mark.parametrize("condition,expected", [
        ("true", True),
        ("no", False),
        ("not false", True),
        ("input.flag", True),
        ("input.missing", False),
        ("not input.flag", False),
        ("input.nested.deep", True),
        ("something opaque", True),
    ])
    def test_input_and_literals(self, condition, expected):
        task = _task(input={"flag": True, "nested": {"deep": 1}})
        assert evaluate_condition(condition, task) is expected

    def test_output_of_dependency(self):
        store = TaskStore()
        dep = store.create_task({"title": "check", "task_type": "validate"})
        store.update_task(dep.task_id, {"status": "completed", "output": {"valid": False}})
        task = store.create_task({"title": "next", "task_type": "action", "dependencies": [dep.task_id]})
        assert evaluate_condition(f"output.{dep.task_id}.valid", task, store) is False
        assert evaluate_condition(f"not output.{dep.task_id}.valid", task, store) is True

    def test_output_of_non_dependency_rejected(self):
        with pytest.raises(ValidationError):
            evaluate_condition("output.task-other.valid", _task(), TaskStore())
