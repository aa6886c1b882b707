"""Tests for specstar.state.manager module."""

import asyncio
import json
import threading
import time

import pytest

from specstar.state.manager import (
    SnapshotNotFound,
    StateListener,
    StateLockError,
    StateManager,
    StatePersistenceError,
    StateValidationError,
    Transaction,
)


class Recorder(StateListener):
    def __init__(self):
        self.changes = []
        self.failures = []
        self.saves = 0
        self.restored = []

    def on_state_changed(self, change):
        self.changes.append(change)

    def on_transaction_failed(self, transaction):
        self.failures.append(transaction)

    def on_state_saved(self):
        self.saves += 1

    def on_snapshot_restored(self, snapshot_id):
        self.restored.append(snapshot_id)


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "data" / "state.json"


class TestTransaction:
    """Tests for Transaction operations on the working copy."""

    def test_nested_set_creates_parents(self):
        tx = Transaction({})
        tx.set(["a", "b", "c"], 1)
        assert tx.state == {"a": {"b": {"c": 1}}}
        assert tx.operations[0].type == "set"
        assert tx.operations[0].previous_value is None

    def test_update_merges(self):
        tx = Transaction({"cfg": {"x": 1, "y": 2}})
        tx.update("cfg", {"y": 3})
        assert tx.state == {"cfg": {"x": 1, "y": 3}}

    def test_delete(self):
        tx = Transaction({"a": {"b": 1, "c": 2}})
        tx.delete(["a", "b"])
        assert tx.state == {"a": {"c": 2}}
        assert tx.operations[0].previous_value == 1

    def test_delete_missing_path_is_noop(self):
        tx = Transaction({"a": 1})
        tx.delete(["x", "y"])
        assert tx.state == {"a": 1}

    def test_working_copy_is_isolated(self):
        original = {"items": [1]}
        tx = Transaction(original)
        tx.state["items"].append(2)
        assert original == {"items": [1]}

    def test_operations_leave_original_untouched(self):
        original = {"a": {"b": 1}, "other": {"x": [1]}}
        tx = Transaction(original)
        tx.set(["a", "b"], 2)
        tx.update("other", {"y": 2})
        tx.delete(["a", "b"])
        assert original == {"a": {"b": 1}, "other": {"x": [1]}}
        assert tx.state == {"a": {}, "other": {"x": [1], "y": 2}}

    def test_untouched_branches_are_not_copied(self):
        untouched = {"items": list(range(100))}
        tx = Transaction({"a": {"b": 1}, "untouched": untouched})
        tx.set(["a", "b"], 2)
        assert tx._working["untouched"] is untouched
        assert tx._working["a"] == {"b": 2}


class TestPersistence:
    """Tests for initialize/save/reload."""

    @pytest.mark.asyncio
    async def test_initialize_creates_file(self, state_path):
        manager = StateManager(state_path, initial_state={"count": 0})
        assert await manager.initialize() == 0
        assert json.loads(state_path.read_text()) == {"count": 0}

    @pytest.mark.asyncio
    async def test_transaction_persists(self, state_path):
        manager = StateManager(state_path)
        await manager.initialize()
        await manager.set("count", 5)
        assert json.loads(state_path.read_text()) == {"count": 5}
        assert manager.version == 1
        assert not manager.wal_path.exists()
        assert not manager.backup_path.exists()
        assert not manager.temp_path.exists()

    @pytest.mark.asyncio
    async def test_reopen_reads_saved_state(self, state_path):
        first = StateManager(state_path)
        await first.initialize()
        await first.update({"a": 1, "b": 2})
        await first.destroy()

        second = StateManager(state_path)
        await second.initialize()
        assert second.get_state() == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_reload_picks_up_external_change(self, state_path):
        manager = StateManager(state_path)
        await manager.initialize()
        state_path.write_text(json.dumps({"external": True}))
        await manager.reload()
        assert manager.get("external") is True

    @pytest.mark.asyncio
    async def test_corrupt_file(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{broken")
        with pytest.raises(StatePersistenceError, match="load"):
            await StateManager(state_path).initialize()

    @pytest.mark.asyncio
    async def test_in_memory_mode(self):
        manager = StateManager(None, initial_state={"n": 1})
        await manager.initialize()
        await manager.set("n", 2)
        assert manager.get("n") == 2
        assert manager.wal_path is None


class TestWalRecovery:
    """Tests for WAL replay on startup."""

    @pytest.mark.asyncio
    async def test_replays_committed_entries(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text(json.dumps({"count": 1}))
        wal = state_path.with_name("state.json.wal")
        entries = [
            {"id": "1", "new_state": {"count": 2}, "committed": True},
            {"id": "2", "new_state": {"count": 99}, "committed": False},
            {"id": "3", "new_state": {"count": 3}, "committed": True},
        ]
        wal.write_text("\n".join(json.dumps(e) for e in entries) + "\nnot json\n")

        manager = StateManager(state_path)
        assert await manager.initialize() == 2
        assert manager.get_state() == {"count": 3}
        assert json.loads(state_path.read_text()) == {"count": 3}
        assert not wal.exists()

    @pytest.mark.asyncio
    async def test_wal_kept_when_state_file_missing(self, state_path):
        state_path.parent.mkdir(parents=True)
        wal = state_path.with_name("state.json.wal")
        wal.write_text(json.dumps({"id": "1", "new_state": {"restored": True}, "committed": True}) + "\n")

        manager = StateManager(state_path, initial_state={})
        assert await manager.initialize() == 1
        assert manager.get_state() == {"restored": True}

    @pytest.mark.asyncio
    async def test_wal_disabled(self, state_path):
        manager = StateManager(state_path, use_wal=False)
        await manager.initialize()
        await manager.set("a", 1)
        assert await manager.recover() == 0
        assert not manager.wal_path.exists()


class TestRollback:
    """Failed transactions leave the state untouched."""

    @pytest.mark.asyncio
    async def test_executor_error(self, state_path):
        manager = StateManager(state_path, initial_state={"a": 1})
        await manager.initialize()
        recorder = Recorder()
        manager.subscribe(recorder)

        def explode(tx):
            tx.set("a", 2)
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError, match="nope"):
            await manager.execute_transaction(explode)
        assert manager.get_state() == {"a": 1}
        assert manager.version == 0
        assert recorder.changes == []
        assert len(recorder.failures) == 1
        assert recorder.failures[0].committed is False
        assert recorder.failures[0].error == "nope"

    @pytest.mark.asyncio
    async def test_validator_rejects(self, state_path):
        manager = StateManager(
            state_path,
            initial_state={"count": 0},
            validator=lambda state: state.get("count", 0) >= 0,
        )
        await manager.initialize()
        await manager.set("count", 3)
        with pytest.raises(StateValidationError):
            await manager.set("count", -1)
        assert manager.get("count") == 3
        assert json.loads(state_path.read_text()) == {"count": 3}

    @pytest.mark.asyncio
    async def test_async_validator_and_executor(self):
        async def validator(state):
            return "forbidden" not in state

        manager = StateManager(None, validator=validator)

        async def executor(tx):
            await asyncio.sleep(0)
            tx.set("forbidden", True)

        with pytest.raises(StateValidationError):
            await manager.execute_transaction(executor)
        assert manager.get_state() == {}

    @pytest.mark.asyncio
    async def test_persistence_failure(self, state_path):
        manager = StateManager(state_path, initial_state={"a": 1})
        await manager.initialize()
        manager.temp_path.mkdir()  # write_text on a directory fails

        with pytest.raises(StatePersistenceError):
            await manager.set("a", 2)
        assert manager.get("a") == 1
        assert json.loads(state_path.read_text()) == {"a": 1}
        # The rolled back entry is not left for recovery
        assert manager.wal_path.read_text() == ""

    @pytest.mark.asyncio
    async def test_readers_never_see_unsaved_value(self, state_path, monkeypatch):
        manager = StateManager(state_path, initial_state={"a": 1})
        await manager.initialize()
        writing = threading.Event()

        def slow_failing_write(data, clear_wal=True):
            writing.set()
            time.sleep(0.2)
            raise StatePersistenceError(state_path, "save", OSError("disk full"))

        monkeypatch.setattr(manager, "_write_atomic", slow_failing_write)
        seen = []

        async def reader():
            while not writing.is_set():
                await asyncio.sleep(0.01)
            seen.append(manager.get_state())

        results = await asyncio.gather(manager.set("a", 2), reader(), return_exceptions=True)
        assert isinstance(results[0], StatePersistenceError)
        assert seen == [{"a": 1}]
        assert manager.get_state() == {"a": 1}
        assert manager.version == 0


class TestChangesAndHistory:
    @pytest.mark.asyncio
    async def test_listener_sees_change(self):
        manager = StateManager(None)
        recorder = Recorder()
        manager.subscribe(recorder)
        await manager.execute_transaction(lambda tx: (tx.set("a", 1), tx.set("b", 2)))
        change = recorder.changes[0]
        assert change.previous_state == {}
        assert change.new_state == {"a": 1, "b": 2}
        assert [op.type for op in change.operations] == ["set", "set"]

    @pytest.mark.asyncio
    async def test_listener_errors_contained(self, caplog):
        class Broken(StateListener):
            def on_state_changed(self, change):
                raise RuntimeError("listener bug")

        manager = StateManager(None)
        manager.subscribe(Broken())
        await manager.set("a", 1)
        assert manager.get("a") == 1
        assert "listener failed" in caplog.text

    @pytest.mark.asyncio
    async def test_history_trimmed(self):
        manager = StateManager(None, max_history=3)
        for i in range(5):
            await manager.set("n", i)
        history = manager.get_history()
        assert [h.state["n"] for h in history] == [2, 3, 4]
        manager.clear_history()
        assert manager.get_history() == []

    @pytest.mark.asyncio
    async def test_get_state_is_a_copy(self):
        manager = StateManager(None, initial_state={"items": []})
        manager.get_state()["items"].append(1)
        assert manager.get_state() == {"items": []}

    @pytest.mark.asyncio
    async def test_concurrent_transactions_serialize(self):
        manager = StateManager(None, initial_state={"n": 0})

        async def increment(tx):
            value = tx.state["n"]
            await asyncio.sleep(0)
            tx.set("n", value + 1)

        await asyncio.gather(*(manager.execute_transaction(increment) for _ in range(10)))
        assert manager.get("n") == 10
        assert manager.version == 10


class TestSnapshots:
    """Tests for snapshot create/list/restore."""

    @pytest.mark.asyncio
    async def test_create_and_restore(self, state_path):
        manager = StateManager(state_path, initial_state={"v": 1})
        await manager.initialize()
        recorder = Recorder()
        manager.subscribe(recorder)

        snapshot = await manager.create_snapshot({"reason": "before upgrade"})
        assert snapshot.metadata == {"reason": "before upgrade"}
        assert manager.snapshot_path(snapshot.id).exists()
        assert manager.list_snapshots() == [snapshot.id]

        await manager.set("v", 2)
        await manager.restore_snapshot(snapshot.id)
        assert manager.get_state() == {"v": 1}
        assert recorder.restored == [snapshot.id]

    @pytest.mark.asyncio
    async def test_in_memory_snapshots(self):
        manager = StateManager(None, initial_state={"v": 1})
        snapshot = await manager.create_snapshot()
        await manager.set("v", 2)
        await manager.restore_snapshot(snapshot.id)
        assert manager.get("v") == 1

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, state_path):
        manager = StateManager(state_path)
        await manager.initialize()
        with pytest.raises(SnapshotNotFound):
            await manager.restore_snapshot("123-abc")


class TestAdvisoryLocks:
    """Tests for acquire_lock/release_lock."""

    def test_lock_blocks_second_holder(self):
        manager = StateManager(None)
        lock = manager.acquire_lock("cli")
        assert manager.is_locked()
        with pytest.raises(StateLockError, match="locked by cli"):
            manager.acquire_lock("dashboard")
        manager.release_lock(lock.id)
        assert not manager.is_locked()
        manager.acquire_lock("dashboard")

    def test_expired_lock_is_dropped(self):
        manager = StateManager(None)
        manager.acquire_lock("cli", timeout_seconds=-1)
        assert not manager.is_locked()
        assert manager.acquire_lock("dashboard").holder == "dashboard"

    @pytest.mark.asyncio
    async def test_locks_do_not_block_transactions(self):
        manager = StateManager(None)
        manager.acquire_lock("cli")
        await manager.set("a", 1)
        assert manager.get("a") == 1
