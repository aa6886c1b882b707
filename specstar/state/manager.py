"""
Durable, transactional state store.

Holds one JSON document and persists it crash-safely:

    execute_transaction(fn)
      1. fn(tx) records operations against a private working copy
      2. optional validator checks the result
      3. the transaction is appended to <path>.wal
      4. the document is written to <path>.tmp, the old file is moved to
         <path>.backup, .tmp is renamed over <path>, the backup and WAL are
         removed
      5. only then does the new value become current and listeners hear
         about it

Any failure leaves the current value exactly as it was before the call. If
the process dies between steps 3 and 4, the next initialize() replays the
committed WAL entries and saves.

Transactions on one manager are serialized; concurrent callers queue on an
asyncio.Lock. Advisory locks (acquire_lock) are only a hint for external
callers coordinating multi-step updates and never block transactions.

Pass path=None for an in-memory store (no files, no WAL).
"""

import asyncio
import copy
import inspect
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 100
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


class StateError(Exception):
    """Base class for state manager failures."""


class StateValidationError(StateError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"State validation failed for transaction {transaction_id}")


class StatePersistenceError(StateError):
    def __init__(self, path: Path, action: str, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to {action} state at {path}: {cause}")


class StateLockError(StateError):
    def __init__(self, holder: str, expires_at: datetime):
        self.holder = holder
        self.expires_at = expires_at
        super().__init__(f"State is locked by {holder} until {expires_at.isoformat()}")


class SnapshotNotFound(StateError):
    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot {snapshot_id} not found")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _generate_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


KeyPath = Union[Sequence[str], str]


def _keys(path: KeyPath) -> list[str]:
    return [path] if isinstance(path, str) else list(path)


@dataclass
class StateOperation:
    type: str  # set | update | merge | replace | delete
    path: list[str] | None
    value: Any = None
    previous_value: Any = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "path": self.path,
            "value": self.value,
            "previous_value": self.previous_value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StateTransaction:
    id: str
    timestamp: datetime
    previous_state: Any
    operations: list[StateOperation]
    new_state: Any = None
    committed: bool = False
    error: str | None = None

    def to_wal_entry(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "operations": [op.to_dict() for op in self.operations],
            "new_state": self.new_state,
            "committed": self.committed,
        }


@dataclass(frozen=True)
class StateSnapshot:
    id: str
    state: Any
    timestamp: datetime
    version: int
    metadata: dict | None = None


@dataclass
class StateLock:
    id: str
    holder: str
    acquired_at: datetime
    expires_at: datetime
    released: bool = False

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.released and self.expires_at > (now or _now())


@dataclass(frozen=True)
class StateChange:
    transaction_id: str
    previous_state: Any
    new_state: Any
    operations: list[StateOperation]


class StateListener:
    """Receives state manager callbacks. Override what you need."""

    def on_state_changed(self, change: StateChange) -> None:
        pass

    def on_transaction_failed(self, transaction: StateTransaction) -> None:
        pass

    def on_state_saved(self) -> None:
        pass

    def on_state_reloaded(self, state: Any) -> None:
        pass

    def on_snapshot_created(self, snapshot: StateSnapshot) -> None:
        pass

    def on_snapshot_restored(self, snapshot_id: str) -> None:
        pass


class Transaction:
    """Operations recorded against a private working copy of the state.

    Paths are a key or a list of keys into nested dicts. Missing
    intermediate dicts are created on set/update.

    The working copy is copy-on-write: set/update/delete copy only the
    dicts along their key path. Reading tx.state hands out the whole value,
    so the first read deep-copies it once.
    """

    def __init__(self, state: Any):
        self._working = state
        self._owned: dict[int, dict] = {}
        self._materialized = False
        self.operations: list[StateOperation] = []

    @property
    def state(self) -> Any:
        if not self._materialized:
            self._working = copy.deepcopy(self._working)
            self._materialized = True
        return self._working

    def _own(self, d: dict) -> dict:
        if self._materialized or id(d) in self._owned:
            return d
        owned = dict(d)
        self._owned[id(owned)] = owned
        return owned

    def _fresh(self) -> dict:
        d: dict = {}
        self._owned[id(d)] = d
        return d

    def _get(self, keys: list[str]) -> Any:
        current = self._working
        for key in keys:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        return current

    def _put(self, keys: list[str], value: Any) -> None:
        if not keys:
            self._working = value
            return
        if isinstance(self._working, dict):
            self._working = self._own(self._working)
        else:
            self._working = self._fresh()
        current = self._working
        for key in keys[:-1]:
            child = current.get(key)
            child = self._own(child) if isinstance(child, dict) else self._fresh()
            current[key] = child
            current = child
        current[keys[-1]] = value

    def set(self, path: KeyPath, value: Any) -> None:
        keys = _keys(path)
        self.operations.append(StateOperation("set", keys, value, copy.deepcopy(self._get(keys))))
        self._put(keys, copy.deepcopy(value))

    def update(self, path: KeyPath, updates: dict) -> None:
        keys = _keys(path)
        current = self._get(keys)
        merged = self._fresh()
        merged.update(current if isinstance(current, dict) else {})
        merged.update(copy.deepcopy(updates))
        self.operations.append(StateOperation("update", keys, updates, copy.deepcopy(current)))
        self._put(keys, merged)

    def merge(self, updates: dict) -> None:
        base = self._working if isinstance(self._working, dict) else {}
        self.operations.append(StateOperation("merge", None, updates, dict(base)))
        merged = self._fresh()
        merged.update(base)
        merged.update(copy.deepcopy(updates))
        self._working = merged

    def replace(self, new_state: Any) -> None:
        self.operations.append(StateOperation("replace", None, new_state, self._working))
        self._working = copy.deepcopy(new_state)
        self._materialized = True

    def delete(self, path: KeyPath) -> None:
        keys = _keys(path)
        self.operations.append(StateOperation("delete", keys, None, copy.deepcopy(self._get(keys))))
        if not keys:
            return
        parent = self._get(keys[:-1])
        if not isinstance(parent, dict) or keys[-1] not in parent:
            return
        owned = self._own(parent)
        if len(keys) > 1:
            self._put(keys[:-1], owned)
        else:
            self._working = owned
        owned.pop(keys[-1])


Executor = Callable[[Transaction], Optional[Awaitable[None]]]
Validator = Callable[[Any], Union[bool, Awaitable[bool]]]


def _serialize(state: Any) -> str:
    return json.dumps(state, indent=2)


class StateManager:
    """Transactional JSON document store with WAL-based crash recovery."""

    def __init__(
        self,
        path: Path | None,
        initial_state: Any = None,
        keep_history: bool = True,
        max_history: int = DEFAULT_MAX_HISTORY,
        use_wal: bool = True,
        validator: Validator | None = None,
        serializer: Callable[[Any], str] = _serialize,
        deserializer: Callable[[str], Any] = json.loads,
    ):
        self.path = Path(path) if path is not None else None
        self.initial_state = {} if initial_state is None else initial_state
        self.keep_history = keep_history
        self.max_history = max_history
        self.use_wal = use_wal and self.path is not None
        self.validator = validator
        self.serializer = serializer
        self.deserializer = deserializer

        self._state: Any = copy.deepcopy(self.initial_state)
        self._version = 0
        self._history: list[StateSnapshot] = []
        self._locks: dict[str, StateLock] = {}
        self._memory_snapshots: dict[str, str] = {}
        self._listeners: list[StateListener] = []
        self._tx_lock = asyncio.Lock()
        self._dirty = False
        self._initialized = False

    # --- file layout ---

    def _sibling(self, suffix: str) -> Path:
        return self.path.with_name(self.path.name + suffix)

    @property
    def wal_path(self) -> Path | None:
        return self._sibling(".wal") if self.path else None

    @property
    def temp_path(self) -> Path | None:
        return self._sibling(".tmp") if self.path else None

    @property
    def backup_path(self) -> Path | None:
        return self._sibling(".backup") if self.path else None

    def snapshot_path(self, snapshot_id: str) -> Path | None:
        return self._sibling(f".snapshot.{snapshot_id}") if self.path else None

    # --- lifecycle ---

    async def initialize(self) -> int:
        """Load state from disk and replay any leftover WAL entries.

        Returns the number of WAL entries replayed.
        """
        if self._initialized:
            return 0
        replayed = 0
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            await self._load()
            if self.use_wal:
                replayed = await self.recover()
        self._initialized = True
        return replayed

    async def destroy(self) -> None:
        """Save if dirty and drop all in-memory bookkeeping and listeners."""
        if self._dirty:
            await self.save()
        self._locks.clear()
        self._history.clear()
        self._memory_snapshots.clear()
        self._listeners.clear()
        self._initialized = False

    # --- listeners ---

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, method: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception:
                logger.warning(f"[STATE] listener failed in {method}", exc_info=True)

    # --- reads ---

    @property
    def version(self) -> int:
        return self._version

    def get_state(self) -> Any:
        """Deep copy of the current value."""
        return copy.deepcopy(self._state)

    def get(self, key: str) -> Any:
        if not isinstance(self._state, dict):
            return None
        return copy.deepcopy(self._state.get(key))

    def get_history(self) -> list[StateSnapshot]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    # --- writes ---

    async def set_state(self, new_state: Any) -> None:
        await self.execute_transaction(lambda tx: tx.replace(new_state))

    async def update(self, updates: dict) -> None:
        await self.execute_transaction(lambda tx: tx.merge(updates))

    async def set(self, key: str, value: Any) -> None:
        await self.execute_transaction(lambda tx: tx.set([key], value))

    async def delete(self, key: str) -> None:
        await self.execute_transaction(lambda tx: tx.delete([key]))

    async def execute_transaction(self, executor: Executor) -> None:
        """Run executor against a working copy and commit the result atomically.

        Raises:
            StateValidationError: If the validator rejects the new value
            StatePersistenceError: If the new value cannot be written
            Exception: Whatever the executor raised
        """
        async with self._tx_lock:
            previous = self._state
            tx = Transaction(previous)
            wal_offset = None
            record = StateTransaction(
                id=_generate_id(),
                timestamp=_now(),
                previous_state=previous,
                operations=tx.operations,
            )

            try:
                result = executor(tx)
                if inspect.isawaitable(result):
                    await result

                new_state = tx._working
                if self.validator is not None:
                    valid = self.validator(new_state)
                    if inspect.isawaitable(valid):
                        valid = await valid
                    if not valid:
                        raise StateValidationError(record.id)

                record.new_state = new_state
                record.committed = True
                if self.use_wal:
                    wal_offset = await asyncio.to_thread(self._append_wal, record)

                # Current value changes only after the rename succeeded
                await self._write(new_state)
            except Exception as e:
                record.committed = False
                record.error = str(e)
                if wal_offset is not None:
                    await asyncio.to_thread(self._truncate_wal, wal_offset)
                logger.warning(f"[STATE] transaction {record.id} rolled back: {e}")
                self._notify("on_transaction_failed", record)
                raise

            self._state = new_state
            self._dirty = False
            self._version += 1
            self._notify("on_state_saved")

            if self.keep_history:
                self._add_history(new_state)

            logger.debug(f"[STATE] committed {record.id} ({len(tx.operations)} ops, v{self._version})")
            self._notify("on_state_changed", StateChange(
                transaction_id=record.id,
                previous_state=previous,
                new_state=copy.deepcopy(new_state),
                operations=list(tx.operations),
            ))

    def _add_history(self, state: Any) -> None:
        self._history.append(StateSnapshot(
            id=_generate_id(),
            state=copy.deepcopy(state),
            timestamp=_now(),
            version=self._version,
        ))
        if len(self._history) > self.max_history:
            del self._history[:-self.max_history]

    # --- persistence ---

    async def save(self) -> None:
        await self._save()

    async def reload(self) -> None:
        await self._load()
        self._notify("on_state_reloaded", self.get_state())

    async def _load(self) -> None:
        if self.path is None:
            return
        if self.path.exists():
            try:
                text = await asyncio.to_thread(self.path.read_text)
                self._state = self.deserializer(text)
            except (OSError, ValueError) as e:
                raise StatePersistenceError(self.path, "load", e) from e
        else:
            self._state = copy.deepcopy(self.initial_state)
            # Keep any WAL around for recover()
            await self._save(clear_wal=False)
        self._dirty = False

    async def _save(self, clear_wal: bool = True) -> None:
        await self._write(self._state, clear_wal)
        self._dirty = False
        self._notify("on_state_saved")

    async def _write(self, state: Any, clear_wal: bool = True) -> None:
        if self.path is None:
            return
        data = self.serializer(state)
        await asyncio.to_thread(self._write_atomic, data, clear_wal)

    def _write_atomic(self, data: str, clear_wal: bool = True) -> None:
        try:
            self.temp_path.write_text(data)
            if self.path.exists():
                os.replace(self.path, self.backup_path)
            os.replace(self.temp_path, self.path)
            if self.backup_path.exists():
                self.backup_path.unlink()
            if clear_wal and self.use_wal and self.wal_path.exists():
                self.wal_path.unlink()
        except OSError as e:
            if self.backup_path.exists() and not self.path.exists():
                os.replace(self.backup_path, self.path)
            logger.warning(f"[STATE] save to {self.path} failed: {e}")
            raise StatePersistenceError(self.path, "save", e) from e

    def _append_wal(self, record: StateTransaction) -> int:
        """Append one entry; returns the WAL size before the write."""
        with open(self.wal_path, "a") as f:
            offset = f.tell()
            f.write(json.dumps(record.to_wal_entry()) + "\n")
            f.flush()
            os.fsync(f.fileno())
        return offset

    def _truncate_wal(self, offset: int) -> None:
        # Drops the entry of a rolled back transaction
        try:
            if self.wal_path.exists():
                os.truncate(self.wal_path, offset)
        except OSError as e:
            logger.warning(f"[STATE] could not truncate {self.wal_path}: {e}")

    async def recover(self) -> int:
        """Replay committed WAL entries, save, and return how many were applied."""
        if not self.use_wal or not self.wal_path.exists():
            return 0

        text = await asyncio.to_thread(self.wal_path.read_text)
        replayed = 0
        for lineno, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"[STATE] skipping unreadable WAL line {lineno}")
                continue
            if entry.get("committed"):
                self._state = entry.get("new_state")
                self._version += 1
                replayed += 1

        await self._save()
        logger.info(f"[STATE] replayed {replayed} WAL entries from {self.wal_path}")
        return replayed

    # --- snapshots ---

    async def create_snapshot(self, metadata: dict | None = None) -> StateSnapshot:
        snapshot = StateSnapshot(
            id=_generate_id(),
            state=copy.deepcopy(self._state),
            timestamp=_now(),
            version=self._version,
            metadata=metadata,
        )
        data = self.serializer(snapshot.state)
        if self.path is None:
            self._memory_snapshots[snapshot.id] = data
        else:
            await asyncio.to_thread(self.snapshot_path(snapshot.id).write_text, data)
        self._notify("on_snapshot_created", snapshot)
        return snapshot

    def list_snapshots(self) -> list[str]:
        """Snapshot ids, oldest first."""
        if self.path is None:
            return list(self._memory_snapshots)
        prefix = self.path.name + ".snapshot."
        ids = [p.name[len(prefix):] for p in self.path.parent.glob(prefix + "*")]
        return sorted(ids)

    async def restore_snapshot(self, snapshot_id: str) -> None:
        """Replace the current value with a snapshot, as a normal transaction."""
        if self.path is None:
            data = self._memory_snapshots.get(snapshot_id)
        else:
            snapshot_file = self.snapshot_path(snapshot_id)
            data = await asyncio.to_thread(snapshot_file.read_text) if snapshot_file.exists() else None
        if data is None:
            raise SnapshotNotFound(snapshot_id)

        await self.set_state(self.deserializer(data))
        self._notify("on_snapshot_restored", snapshot_id)

    # --- advisory locks ---

    def acquire_lock(self, holder: str, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> StateLock:
        """Take the advisory lock. Expired locks are dropped on the way.

        Raises:
            StateLockError: If another unexpired lock is held
        """
        now = _now()
        for lock_id, lock in list(self._locks.items()):
            if not lock.is_active(now):
                del self._locks[lock_id]
            else:
                raise StateLockError(lock.holder, lock.expires_at)

        lock = StateLock(
            id=_generate_id(),
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=timeout_seconds),
        )
        self._locks[lock.id] = lock
        return lock

    def release_lock(self, lock_id: str) -> None:
        lock = self._locks.pop(lock_id, None)
        if lock is not None:
            lock.released = True

    def is_locked(self) -> bool:
        now = _now()
        return any(lock.is_active(now) for lock in self._locks.values())
