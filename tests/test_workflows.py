"""Tests for workflow definitions and instantiation."""
from __future__ import annotations

import pytest

from queuepilot.core.definitions import WorkflowStore
from queuepilot.core.errors import NotFoundError, ValidationError
from queuepilot.core.executor import Executor
from queuepilot.core.runners import RunnerRegistry
from queuepilot.core.state import ExecutorStateStore
from queuepilot.core.store import TaskStore
from queuepilot.core.workflows import build_step_tasks, instantiate_workflow, run_workflow


@pytest.fixture
def workflows(tmp_path):
    return WorkflowStore(store_path=str(tmp_path / "workflows.json"))


@pytest.fixture
def store():
    return TaskStore()


def _three_steps(workflows, **kw):
    fields = {
        "name": "release",
        "steps": [
            {"title": "build", "task_type": "action"},
            {"title": "test"},
            {"title": "ship", "input": {"env": "prod"}},
        ],
    }
    fields.update(kw)
    return workflows.create(fields)


class TestDefinitions:
    def test_create(self, workflows):
        wf = _three_steps(workflows)
        assert wf.workflow_id.startswith("wf-")
        assert wf.version == 1
        assert wf.steps[1]["task_type"] == "action"

    def test_steps_required(self, workflows):
        with pytest.raises(ValidationError):
            workflows.create({"name": "empty", "steps": []})

    def test_step_title_required(self, workflows):
        with pytest.raises(ValidationError, match=r"steps\[1\]"):
            workflows.create({"name": "x", "steps": [{"title": "a"}, {"task_type": "action"}]})

    def test_depends_on_must_point_backwards(self, workflows):
        with pytest.raises(ValidationError):
            workflows.create({"name": "x", "steps": [{"title": "a", "depends_on": [1]}, {"title": "b"}]})

    def test_version_bumps_on_step_change(self, workflows):
        wf = _three_steps(workflows)
        renamed = workflows.update(wf.workflow_id, {"description": "weekly"})
        assert renamed.version == 1
        changed = workflows.update(wf.workflow_id, {"steps": [{"title": "only"}]})
        assert changed.version == 2

    def test_persisted(self, workflows, tmp_path):
        wf = _three_steps(workflows)
        reloaded = WorkflowStore(store_path=str(tmp_path / "workflows.json"))
        assert [s["title"] for s in reloaded.get(wf.workflow_id).steps] == ["build", "test", "ship"]

    def test_update_unknown(self, workflows):
        with pytest.raises(NotFoundError):
            workflows.update("wf-nope", {"name": "x"})


class TestInstantiate:
    def test_sequential_chain(self, workflows, store):
        wf = _three_steps(workflows)
        tasks = instantiate_workflow(store, wf, {"release": "1.2"})
        assert [t.title for t in tasks] == ["build", "test", "ship"]
        assert [t.priority for t in tasks] == [3, 2, 1]
        assert tasks[0].dependencies == []
        assert tasks[1].dependencies == [tasks[0].task_id]
        assert tasks[2].dependencies == [tasks[1].task_id]
        assert len({t.workflow_run_id for t in tasks}) == 1
        assert all(t.workflow_id == wf.workflow_id for t in tasks)
        assert tasks[2].input == {"release": "1.2", "env": "prod"}

    def test_parallel_has_no_chain(self, workflows, store):
        wf = _three_steps(workflows, default_execution_mode="parallel")
        tasks = instantiate_workflow(store, wf)
        assert all(t.dependencies == [] for t in tasks)
        assert all(t.execution_mode == "parallel" for t in tasks)
        assert all(t.max_parallel == wf.max_parallel_tasks for t in tasks)

    def test_explicit_depends_on_and_priority(self, workflows, store):
        wf = workflows.create({
            "name": "fan-in",
            "default_execution_mode": "parallel",
            "steps": [
                {"title": "a"},
                {"title": "b"},
                {"title": "merge", "depends_on": [0, 1], "priority": 50},
            ],
        })
        a, b, merge = instantiate_workflow(store, wf)
        assert merge.dependencies == [a.task_id, b.task_id]
        assert merge.priority == 50

    def test_each_run_gets_new_id(self, workflows, store):
        wf = _three_steps(workflows)
        first = instantiate_workflow(store, wf)
        second = instantiate_workflow(store, wf)
        assert first[0].workflow_run_id != second[0].workflow_run_id

    def test_disabled_rejected(self, workflows, store):
        wf = _three_steps(workflows, enabled=False)
        with pytest.raises(ValidationError, match="disabled"):
            instantiate_workflow(store, wf)
        assert store.list_tasks() == []

    def test_run_unknown_workflow(self, workflows, store):
        with pytest.raises(NotFoundError):
            run_workflow(workflows, store, "wf-nope")

    def test_build_step_tasks_tags(self, workflows):
        wf = _three_steps(workflows)
        fields_list, batch_deps, run_id = build_step_tasks(wf, None, {"schedule_id": "sched-1"})
        assert batch_deps == [[], [0], [1]]
        assert all(f["schedule_id"] == "sched-1" for f in fields_list)
        assert all(f["workflow_run_id"] == run_id for f in fields_list)


def test_executor_runs_steps_in_order(workflows, store) -> None:
    order = []
    runners = RunnerRegistry({"rec": lambda task, ctx: order.append(task.title)})
    state = ExecutorStateStore()
    ex = Executor(store, state, runners=runners, retry_backoff_seconds=0)
    state.update(status="running")
    wf = workflows.create({
        "name": "pipeline",
        "steps": [{"title": "extract", "task_type": "rec"}, {"title": "load", "task_type": "rec"}],
    })
    run_workflow(workflows, store, wf.workflow_id)
    for _ in range(3):
        ex.poll_once()
        assert ex.wait_for_idle(5)
    assert order == ["extract", "load"]
    assert all(t.status == "completed" for t in store.list_tasks())
