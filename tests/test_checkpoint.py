"""Tests for checkpoint stores and the execution state manager."""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import make_plan, make_task

from packai.errors import StatePersistenceError
from packai.models import TaskStatus
from packai.orchestration.checkpoint import (
    ExecutionStateManager,
    MemoryStateStore,
    SQLiteStateStore,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStateStore()
    return SQLiteStateStore(str(tmp_path / "state.db"))


class TestStateStores:
    def test_save_load_delete(self, store):
        store.save("k", {"a": [1, 2]})
        assert store.load("k") == {"a": [1, 2]}

        store.save("k", {"a": []})
        assert store.load("k") == {"a": []}
        assert store.keys() == ["k"]

        store.delete("k")
        assert store.load("k") is None
        store.delete("k")

    def test_load_missing(self, store):
        assert store.load("nope") is None

    def test_sqlite_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "state.db")
        SQLiteStateStore(path).save("plan-x", {"v": 1})
        assert SQLiteStateStore(path).load("plan-x") == {"v": 1}

    def test_memory_store_copies_values(self):
        store = MemoryStateStore()
        value = {"items": [1]}
        store.save("k", value)
        value["items"].append(2)
        assert store.load("k") == {"items": [1]}


class TestExecutionStateManager:
    def test_checkpoint_round_trip_keeps_statuses(self, store):
        manager = ExecutionStateManager(store, clock=lambda: 42.0)
        plan = make_plan(
            [make_task("a", status=TaskStatus.COMPLETED), make_task("b", "a")],
            name="webapp",
        )

        manager.checkpoint("run-1", plan)
        loaded = manager.load_checkpoint("run-1")

        assert loaded == plan
        assert loaded.get_task("a").status == TaskStatus.COMPLETED
        assert store.load("plan-run-1")["saved_at"] == 42.0

    def test_missing_checkpoint(self, store):
        assert ExecutionStateManager(store).load_checkpoint("none") is None

    def test_clear(self, store):
        manager = ExecutionStateManager(store)
        manager.checkpoint("run-1", make_plan([make_task("a")]))
        manager.clear_checkpoint("run-1")
        assert manager.load_checkpoint("run-1") is None

    def test_store_errors_wrapped(self):
        broken = MagicMock()
        broken.save.side_effect = OSError("disk full")
        broken.load.side_effect = OSError("unreadable")
        manager = ExecutionStateManager(broken)

        with pytest.raises(StatePersistenceError) as exc_info:
            manager.checkpoint("run-1", make_plan([make_task("a")]))
        assert exc_info.value.message == "State save failed: disk full"

        with pytest.raises(StatePersistenceError):
            manager.load_checkpoint("run-1")


class TestAutosave:
    @pytest.mark.asyncio
    async def test_autosave_writes_periodically(self):
        store = MemoryStateStore()
        manager = ExecutionStateManager(store)
        plan = make_plan([make_task("a")])

        manager.start_autosave("run-1", lambda: plan, interval_seconds=0.01)
        assert manager.autosave_running
        await asyncio.sleep(0.05)
        task = manager._autosave_task
        await manager.stop_autosave()

        assert not manager.autosave_running
        assert task.done() and task.cancelled()
        assert store.load("plan-run-1") is not None

    @pytest.mark.asyncio
    async def test_restart_cancels_previous_loop(self):
        manager = ExecutionStateManager(MemoryStateStore())
        manager.start_autosave("run-1", lambda: make_plan([]), interval_seconds=10)
        first = manager._autosave_task

        manager.start_autosave("run-2", lambda: make_plan([]), interval_seconds=10)
        await asyncio.wait([first])

        assert first.cancelled()
        assert manager.autosave_running
        await manager.stop_autosave()

    @pytest.mark.asyncio
    async def test_stop_without_autosave_is_noop(self):
        manager = ExecutionStateManager(MemoryStateStore())
        await manager.stop_autosave()
        assert not manager.autosave_running

    @pytest.mark.asyncio
    async def test_autosave_survives_store_failure(self):
        broken = MagicMock()
        broken.save.side_effect = OSError("disk full")
        manager = ExecutionStateManager(broken)

        manager.start_autosave("run-1", lambda: make_plan([]), interval_seconds=0.01)
        await asyncio.sleep(0.05)

        assert manager.autosave_running
        assert broken.save.call_count >= 2
        manager.dispose()
        assert not manager.autosave_running
