"""Tests for the task store: validation, conditional updates, cascade, persistence."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import os

import pytest

from queuepilot.core.errors import NotFoundError, ValidationError
from queuepilot.core.models import Task
from queuepilot.core.store import TaskStore, queue_order_key


@pytest.fixture
def store(tmp_path):
    return TaskStore(store_path=str(tmp_path / "tasks.json"))


def _task(store, title="t", **kw):
    fields = {"title": title, "task_type": "action"}
    fields.update(kw)
    return store.create_task(fields)


# ── creation and validation ──────────────────────────────────

class TestCreate:
    def test_defaults(self, store):
        task = _task(store, "Build report")
        assert task.task_id.startswith("task-")
        assert task.status == "pending"
        assert task.priority == 0
        assert task.max_retries == 3
        assert task.retry_count == 0
        assert task.execution_mode == "sequential"

    def test_store_default_max_retries(self, tmp_path):
        s = TaskStore(default_max_retries=7)
        assert _task(s).max_retries == 7

    def test_title_required(self, store):
        with pytest.raises(ValidationError):
            store.create_task({"task_type": "action"})

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValidationError, match="unknown task fields"):
            _task(store, bogus=1)

    def test_cannot_create_running(self, store):
        with pytest.raises(ValidationError):
            _task(store, status="running")

    def test_bad_execution_mode(self, store):
        with pytest.raises(ValidationError):
            _task(store, execution_mode="sideways")

    def test_unknown_dependency_rejected(self, store):
        with pytest.raises(ValidationError, match="unknown dependencies"):
            _task(store, dependencies=["task-missing"])

    def test_unknown_parent_rejected(self, store):
        with pytest.raises(ValidationError):
            _task(store, parent_id="task-missing")

    def test_waiting_for_input_sets_status(self, store):
        task = _task(store, waiting_for_input=True, input_prompt="Which region?")
        assert task.status == "waiting_input"

    def test_returned_copy_is_detached(self, store):
        task = _task(store)
        task.title = "changed"
        assert store.get_task(task.task_id).title == "t"

    def test_batch_is_atomic(self, store):
        with pytest.raises(ValidationError):
            store.create_tasks([
                {"title": "ok", "task_type": "action"},
                {"title": "", "task_type": "action"},
            ])
        assert store.list_tasks() == []

    def test_batch_dependencies(self, store):
        a, b = store.create_tasks(
            [{"title": "a", "task_type": "action"}, {"title": "b", "task_type": "action"}],
            batch_dependencies=[[], [0]],
        )
        assert b.dependencies == [a.task_id]

    def test_batch_dependency_must_point_backwards(self, store):
        with pytest.raises(ValidationError):
            store.create_tasks(
                [{"title": "a", "task_type": "action"}, {"title": "b", "task_type": "action"}],
                batch_dependencies=[[1], []],
            )


class TestCycles:
    def test_update_creating_cycle_rejected(self, store):
        a = _task(store, "a")
        b = _task(store, "b", dependencies=[a.task_id])
        with pytest.raises(ValidationError, match="cycle"):
            store.update_task(a.task_id, {"dependencies": [b.task_id]})

    def test_self_dependency_rejected(self, store):
        a = _task(store, "a")
        with pytest.raises(ValidationError, match="cycle"):
            store.update_task(a.task_id, {"dependencies": [a.task_id]})

    def test_longer_cycle_rejected(self, store):
        a = _task(store, "a")
        b = _task(store, "b", dependencies=[a.task_id])
        c = _task(store, "c", dependencies=[b.task_id])
        with pytest.raises(ValidationError):
            store.update_task(a.task_id, {"dependencies": [c.task_id]})

    def test_diamond_is_fine(self, store):
        a = _task(store, "a")
        b = _task(store, "b", dependencies=[a.task_id])
        c = _task(store, "c", dependencies=[a.task_id])
        d = _task(store, "d", dependencies=[b.task_id, c.task_id])
        assert d.dependencies == [b.task_id, c.task_id]


# ── selection ────────────────────────────────────────────────

class TestSelection:
    def test_order_key(self):
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        low = Task(task_id="task-a", title="low", task_type="action", priority=1, created_at=t0)
        old = Task(task_id="task-c", title="old", task_type="action", priority=5, created_at=t0)
        new = Task(task_id="task-b", title="new", task_type="action", priority=5, created_at=t0 + timedelta(seconds=1))
        tie = Task(task_id="task-d", title="tie", task_type="action", priority=5, created_at=t0)
        ordered = sorted([low, new, tie, old], key=queue_order_key)
        assert [t.title for t in ordered] == ["old", "tie", "new", "low"]

    def test_next_pending_prefers_priority(self, store):
        _task(store, "low", priority=1)
        high = _task(store, "high", priority=9)
        assert store.get_next_pending_task().task_id == high.task_id

    def test_next_pending_skips_unmet_dependencies(self, store):
        a = _task(store, "a", priority=1)
        _task(store, "b", priority=9, dependencies=[a.task_id])
        assert store.get_next_pending_task().task_id == a.task_id

    def test_next_pending_skips_waiting_for_input(self, store):
        _task(store, "asks", priority=9, waiting_for_input=True)
        plain = _task(store, "plain", priority=1)
        assert store.get_next_pending_task().task_id == plain.task_id

    def test_next_pending_respects_not_before(self, store):
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        t = _task(store)
        store.update_task(t.task_id, {"not_before": later})
        assert store.get_next_pending_task() is None
        assert store.get_next_pending_task(now=later + timedelta(seconds=1)).task_id == t.task_id

    def test_next_pending_none_when_empty(self, store):
        assert store.get_next_pending_task() is None


# ── conditional updates ──────────────────────────────────────

class TestConditionalUpdates:
    def test_claim_once(self, store):
        t = _task(store)
        first = store.claim_task(t.task_id)
        second = store.claim_task(t.task_id)
        assert first is not None and first.status == "running"
        assert first.started_at is not None
        assert second is None

    def test_claim_unknown_returns_none(self, store):
        assert store.claim_task("task-nope") is None

    def test_claim_skips_waiting_for_input(self, store):
        t = _task(store, waiting_for_input=True)
        store.update_task(t.task_id, {"status": "pending"})
        assert store.claim_task(t.task_id) is None

    def test_expected_status_mismatch(self, store):
        t = _task(store)
        assert store.update_task(t.task_id, {"priority": 4}, expected_status="running") is None
        assert store.get_task(t.task_id).priority == 0

    def test_update_where_predicate(self, store):
        t = _task(store, priority=2)
        updated = store.update_task_where(t.task_id, lambda x: x.priority == 2, {"priority": 3})
        assert updated.priority == 3
        assert store.update_task_where(t.task_id, lambda x: x.priority == 2, {"priority": 4}) is None

    def test_update_unknown_raises(self, store):
        with pytest.raises(NotFoundError):
            store.update_task("task-nope", {"priority": 1})

    def test_terminal_status_sets_completed_at(self, store):
        t = _task(store)
        done = store.update_task(t.task_id, {"status": "cancelled"})
        assert done.completed_at is not None


# ── delete / stats / purge ───────────────────────────────────

class TestMaintenance:
    def test_cascade_delete(self, store):
        parent = _task(store, "parent")
        child = _task(store, "child", parent_id=parent.task_id)
        grandchild = _task(store, "grandchild", parent_id=child.task_id)
        other = _task(store, "other")
        assert store.delete_task(parent.task_id) == 3
        assert store.get_task(grandchild.task_id) is None
        assert store.get_task(other.task_id) is not None

    def test_delete_unknown_raises(self, store):
        with pytest.raises(NotFoundError):
            store.delete_task("task-nope")

    def test_children_and_dependents(self, store):
        parent = _task(store, "parent")
        c1 = _task(store, "c1", parent_id=parent.task_id)
        c2 = _task(store, "c2", parent_id=parent.task_id, dependencies=[c1.task_id])
        assert [t.task_id for t in store.get_tasks_by_parent_id(parent.task_id)] == [c1.task_id, c2.task_id]
        assert [t.task_id for t in store.get_tasks_by_dependency(c1.task_id)] == [c2.task_id]

    def test_queue_stats(self, store):
        a = _task(store)
        _task(store)
        _task(store, waiting_for_input=True)
        store.claim_task(a.task_id)
        stats = store.get_queue_stats()
        assert stats["total"] == 3
        assert stats["running"] == 1
        assert stats["pending"] == 1
        assert stats["waiting_input"] == 1
        assert stats["waiting_for_input"] == 1
        assert stats["failed"] == 0

    def test_list_filters(self, store):
        _task(store, chat_id="c1")
        _task(store, chat_id="c2")
        _task(store, chat_id="c1")
        assert len(store.list_tasks(chat_id="c1")) == 2
        assert len(store.list_tasks(limit=1)) == 1
        assert store.list_tasks(status="failed") == []

    def test_purge_finished(self, store):
        old = _task(store, "old")
        fresh = _task(store, "fresh")
        pending = _task(store, "pending")
        store.update_task(old.task_id, {"status": "completed", "completed_at": datetime.now(timezone.utc) - timedelta(hours=48)})
        store.update_task(fresh.task_id, {"status": "completed"})
        assert store.purge_finished(24) == 1
        assert store.get_task(old.task_id) is None
        assert store.get_task(fresh.task_id) is not None
        assert store.get_task(pending.task_id) is not None

    def test_clear_all(self, store):
        _task(store)
        _task(store)
        assert store.clear_all() == 2
        assert store.list_tasks() == []


class TestPersistence:
    def test_reload(self, tmp_path):
        path = str(tmp_path / "tasks.json")
        s1 = TaskStore(store_path=path)
        a = s1.create_task({"title": "a", "task_type": "fetch", "input": {"url": "http://example.com"}})
        s1.claim_task(a.task_id)
        s2 = TaskStore(store_path=path)
        loaded = s2.get_task(a.task_id)
        assert loaded.status == "running"
        assert loaded.input == {"url": "http://example.com"}
        assert loaded.started_at is not None

    def test_file_is_json(self, tmp_path):
        path = str(tmp_path / "tasks.json")
        s = TaskStore(store_path=path)
        s.create_task({"title": "a", "task_type": "action"})
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        assert len(raw["tasks"]) == 1
        assert not os.path.exists(path + ".tmp")

    def test_non_json_input_rejected(self, store):
        with pytest.raises(ValidationError):
            _task(store, input={"when": object()})
