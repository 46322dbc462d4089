from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import os

import pytest

from queuepilot.core.definitions import ScheduleStore, WorkflowStore
from queuepilot.core.errors import NotFoundError, ValidationError
from queuepilot.core.executor import Executor
from queuepilot.core.runners import RunnerRegistry
from queuepilot.core.scheduler import CronScheduler
from queuepilot.core.state import ExecutorStateStore
from queuepilot.core.store import TaskStore
from queuepilot.core.task_events import EventBus


@pytest.fixture
def env(tmp_path):
    store = TaskStore()
    schedules = ScheduleStore(store_path=str(tmp_path / "schedules.json"))
    workflows = WorkflowStore()
    events = EventBus()
    state = ExecutorStateStore()

    def boom(task, ctx):
        raise RuntimeError("upstream down")

    executor = Executor(store, state, runners=RunnerRegistry({"boom": boom}), events=events, retry_backoff_seconds=0)
    state.update(status="running")
    scheduler = CronScheduler(schedules, store, workflows=workflows, events=events, data_dir=str(tmp_path))
    return {
        "store": store,
        "schedules": schedules,
        "workflows": workflows,
        "executor": executor,
        "scheduler": scheduler,
        "tmp_path": tmp_path,
    }


def _drain(executor) -> None:
    executor.poll_once()
    assert executor.wait_for_idle(5)


# ── store ────────────────────────────────────────────────────

def test_create_computes_next_run(env) -> None:
    sched = env["schedules"].create({
        "name": "hourly",
        "cron_expression": "0 * * * *",
        "task_template": {"title": "Digest"},
    })
    assert sched.schedule_id.startswith("sched-")
    assert sched.next_run_at > datetime.now(timezone.utc)
    assert sched.next_run_at.minute == 0
    assert sched.task_template["task_type"] == "action"


def test_create_rejects_bad_cron(env) -> None:
    with pytest.raises(ValidationError):
        env["schedules"].create({"name": "x", "cron_expression": "every day", "task_template": {"title": "t"}})


def test_create_rejects_bad_timezone(env) -> None:
    with pytest.raises(ValidationError):
        env["schedules"].create({
            "name": "x", "cron_expression": "* * * * *", "timezone": "Nowhere/City", "task_template": {"title": "t"},
        })


def test_create_requires_target(env) -> None:
    with pytest.raises(ValidationError):
        env["schedules"].create({"name": "x", "cron_expression": "* * * * *"})


def test_disable_clears_next_run(env) -> None:
    sched = env["schedules"].create({"name": "x", "cron_expression": "* * * * *", "task_template": {"title": "t"}})
    updated = env["schedules"].update(sched.schedule_id, {"enabled": False})
    assert updated.next_run_at is None
    reenabled = env["schedules"].update(sched.schedule_id, {"enabled": True})
    assert reenabled.next_run_at is not None


def test_persisted(env) -> None:
    sched = env["schedules"].create({"name": "x", "cron_expression": "5 4 * * *", "task_template": {"title": "t"}})
    reloaded = ScheduleStore(store_path=str(env["tmp_path"] / "schedules.json"))
    assert reloaded.get(sched.schedule_id).cron_expression == "5 4 * * *"


def test_delete_unknown(env) -> None:
    with pytest.raises(NotFoundError):
        env["schedules"].delete("sched-nope")


# ── tick ─────────────────────────────────────────────────────

def test_tick_materializes_due_schedule(env) -> None:
    sched = env["schedules"].create({
        "name": "nightly",
        "cron_expression": "* * * * *",
        "task_template": {"title": "Backup", "input": {"target": "db"}},
    })
    now = sched.next_run_at
    created = env["scheduler"].tick(now)
    assert len(created) == 1
    task = created[0]
    assert task.schedule_id == sched.schedule_id
    assert task.priority == 5
    assert task.input["target"] == "db"
    assert task.input["scheduled_by"] == "cron"
    assert task.input["schedule_name"] == "nightly"

    after = env["schedules"].get(sched.schedule_id)
    assert after.run_count == 1
    assert after.last_run_at == now
    assert after.next_run_at > now
    # Not due again at the same instant
    assert env["scheduler"].tick(now) == []


def test_tick_skips_not_due(env) -> None:
    sched = env["schedules"].create({"name": "x", "cron_expression": "0 0 1 1 *", "task_template": {"title": "t"}})
    assert env["scheduler"].tick(sched.next_run_at - timedelta(minutes=1)) == []


def test_tick_workflow_schedule(env) -> None:
    wf = env["workflows"].create({"name": "wf", "steps": [{"title": "one"}, {"title": "two"}]})
    sched = env["schedules"].create({"name": "x", "cron_expression": "* * * * *", "workflow_id": wf.workflow_id})
    created = env["scheduler"].tick(sched.next_run_at)
    assert [t.title for t in created] == ["one", "two"]
    assert {t.schedule_id for t in created} == {sched.schedule_id}
    assert created[0].workflow_run_id == created[1].workflow_run_id


def test_run_schedule_now(env) -> None:
    sched = env["schedules"].create({"name": "x", "cron_expression": "0 0 1 1 *", "task_template": {"title": "t"}})
    created = env["scheduler"].run_schedule(sched.schedule_id)
    assert len(created) == 1
    after = env["schedules"].get(sched.schedule_id)
    assert after.run_count == 1
    assert after.next_run_at == sched.next_run_at


def test_run_schedule_unknown(env) -> None:
    with pytest.raises(NotFoundError):
        env["scheduler"].run_schedule("sched-nope")


def test_initialize_fills_missing_next_run(env) -> None:
    sched = env["schedules"].create({"name": "x", "cron_expression": "* * * * *", "task_template": {"title": "t"}})
    env["schedules"]._records[sched.schedule_id].next_run_at = None
    assert env["scheduler"].initialize_schedules() == 1
    assert env["schedules"].get(sched.schedule_id).next_run_at is not None


# ── failure accounting ───────────────────────────────────────

def test_chronic_failure_disables_schedule(env) -> None:
    sched = env["schedules"].create({
        "name": "flaky",
        "cron_expression": "* * * * *",
        "task_template": {"title": "Poll upstream", "task_type": "boom", "max_retries": 0},
        "max_consecutive_failures": 3,
    })
    for expected in (1, 2, 3):
        current = env["schedules"].get(sched.schedule_id)
        created = env["scheduler"].tick(current.next_run_at)
        assert len(created) == 1
        _drain(env["executor"])
        assert env["store"].get_task(created[0].task_id).status == "failed"
        assert env["schedules"].get(sched.schedule_id).consecutive_failures == expected

    disabled = env["schedules"].get(sched.schedule_id)
    assert disabled.enabled is False
    assert disabled.next_run_at is None
    assert "upstream down" in disabled.last_error
    # No further tasks
    assert env["scheduler"].tick(datetime.now(timezone.utc) + timedelta(days=1)) == []

    with open(os.path.join(env["tmp_path"], "audit.jsonl"), "r", encoding="utf-8") as f:
        types = [json.loads(line)["type"] for line in f]
    assert "schedule.disabled" in types


def test_success_resets_failures(env) -> None:
    sched = env["schedules"].create({
        "name": "mixed",
        "cron_expression": "* * * * *",
        "task_template": {"title": "t", "task_type": "boom", "max_retries": 0},
    })
    current = env["schedules"].get(sched.schedule_id)
    env["scheduler"].tick(current.next_run_at)
    _drain(env["executor"])
    assert env["schedules"].get(sched.schedule_id).consecutive_failures == 1

    env["schedules"].update(sched.schedule_id, {"task_template": {"title": "t", "task_type": "action"}})
    current = env["schedules"].get(sched.schedule_id)
    env["scheduler"].tick(current.next_run_at)
    _drain(env["executor"])
    after = env["schedules"].get(sched.schedule_id)
    assert after.consecutive_failures == 0
    assert after.last_error is None
    assert after.enabled is True


def test_materialization_error_counts(env) -> None:
    wf = env["workflows"].create({"name": "wf", "steps": [{"title": "one"}]})
    sched = env["schedules"].create({
        "name": "orphan",
        "cron_expression": "* * * * *",
        "workflow_id": wf.workflow_id,
        "max_consecutive_failures": 2,
    })
    env["workflows"].delete(wf.workflow_id)
    for _ in range(2):
        current = env["schedules"].get(sched.schedule_id)
        assert env["scheduler"].tick(current.next_run_at) == []
    after = env["schedules"].get(sched.schedule_id)
    assert after.consecutive_failures == 2
    assert after.enabled is False
    assert "workflow not found" in after.last_error


def test_retries_do_not_count_as_failures(env) -> None:
    sched = env["schedules"].create({
        "name": "retrying",
        "cron_expression": "* * * * *",
        "task_template": {"title": "t", "task_type": "boom", "max_retries": 2},
    })
    current = env["schedules"].get(sched.schedule_id)
    env["scheduler"].tick(current.next_run_at)
    _drain(env["executor"])
    assert env["schedules"].get(sched.schedule_id).consecutive_failures == 0


def test_failed_workflow_run_counts_once(env) -> None:
    wf = env["workflows"].create({
        "name": "pipeline",
        "steps": [
            {"title": "fetch", "task_type": "boom", "max_retries": 0},
            {"title": "transform"},
            {"title": "publish"},
        ],
    })
    sched = env["schedules"].create({
        "name": "nightly-pipeline",
        "cron_expression": "* * * * *",
        "workflow_id": wf.workflow_id,
        "max_consecutive_failures": 3,
    })
    created = env["scheduler"].tick(sched.next_run_at)
    assert len(created) == 3
    _drain(env["executor"])
    assert [env["store"].get_task(t.task_id).status for t in created] == ["failed"] * 3

    after = env["schedules"].get(sched.schedule_id)
    assert after.consecutive_failures == 1
    assert after.enabled is True
    assert "upstream down" in after.last_error
    assert created[0].task_id in after.last_error


def test_completed_workflow_run_resets_failures(env) -> None:
    wf = env["workflows"].create({"name": "wf", "steps": [{"title": "one"}, {"title": "two"}]})
    sched = env["schedules"].create({"name": "x", "cron_expression": "* * * * *", "workflow_id": wf.workflow_id})
    env["schedules"].record_failure(sched.schedule_id, "earlier run failed")

    current = env["schedules"].get(sched.schedule_id)
    env["scheduler"].tick(current.next_run_at)
    _drain(env["executor"])
    # First step done, second still pending: the run has not settled yet
    assert env["schedules"].get(sched.schedule_id).consecutive_failures == 1
    _drain(env["executor"])
    after = env["schedules"].get(sched.schedule_id)
    assert after.consecutive_failures == 0
    assert after.last_error is None
