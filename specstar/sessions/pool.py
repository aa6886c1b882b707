"""Session pool: registry of live worker sessions.

The pool does not supervise agent processes itself. A SessionLauncher starts
and stops them and reports back through worker events; the pool validates
every reported status change against the worker state machine, keeps the
latest WorkerSession snapshot per session, and aggregates notifications.

Capacity is the pool's responsibility: spawn() raises SessionPoolAtCapacity
once max_concurrent sessions are live.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Protocol

from specstar.lib.ids import SessionId, generate_session_id
from specstar.lib.types import WorkerSession, WorkerStatus
from specstar.sessions.events import (
    Activity,
    ApprovalNeeded,
    NotificationAggregator,
    NotificationKind,
    SessionFailed,
    SessionNotification,
    ShutdownComplete,
    StatusChanged,
    WorkerEvent,
    worker_event_to_notification,
)
from specstar.sessions.fsm import WorkerFSM, is_valid_worker_transition

logger = logging.getLogger(__name__)


class SessionPoolError(Exception):
    """Base class for session pool failures."""


class SessionPoolAtCapacity(SessionPoolError):
    def __init__(self, current: int, maximum: int):
        self.current = current
        self.maximum = maximum
        super().__init__(f"Cannot spawn session: pool is at capacity ({current}/{maximum})")


class SessionNotFound(SessionPoolError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f'Session "{session_id}" not found')


class SessionSpawnError(SessionPoolError):
    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Failed to spawn session: {cause}")


class SessionEndedInError(SessionPoolError):
    """The session shut down while in the error state."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} ended in error: {message}")


@dataclass(frozen=True)
class SessionOptions:
    """Configuration for spawning a worker session."""
    cwd: str
    name: str
    initial_prompt: str | None = None
    model: str | None = None
    completion_criteria: str | None = None


class SessionLauncher(Protocol):
    """Starts and stops the process behind a session."""

    async def start(
        self,
        session: WorkerSession,
        options: SessionOptions,
        emit: Callable[[WorkerEvent], None],
    ) -> None: ...

    async def stop(self, session_id: SessionId) -> None: ...


class SessionPoolListener:
    """Receives pool change callbacks. Override what you need."""

    def on_session_added(self, session: WorkerSession) -> None:
        pass

    def on_session_removed(self, session_id: SessionId) -> None:
        pass

    def on_session_updated(self, session: WorkerSession) -> None:
        pass

    def on_notification(self, notification: SessionNotification) -> None:
        pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Entry:
    """Pool bookkeeping for one live session."""

    def __init__(self, session: WorkerSession, track_exit: bool = False):
        self.session = session
        self.fsm = WorkerFSM(session.id, session.status)
        self.exited = asyncio.Event()
        self.track_exit = track_exit
        self.last_error: str | None = None
        self.ended_in_error = False


class SessionPool:
    """Bounded registry of worker sessions."""

    def __init__(self, launcher: SessionLauncher, max_concurrent: int = 8):
        self.launcher = launcher
        self.max_concurrent = max_concurrent
        self._entries: dict[SessionId, _Entry] = {}
        self._listeners: list[SessionPoolListener] = []
        self._aggregator = NotificationAggregator()
        self._exited: dict[SessionId, _Entry] = {}

    # --- listeners ---

    def subscribe(self, listener: SessionPoolListener) -> Callable[[], None]:
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
                logger.warning(f"Session pool listener failed in {method}", exc_info=True)

    # --- lifecycle ---

    async def spawn(self, options: SessionOptions, track_exit: bool = False) -> WorkerSession:
        """Create a new session and hand it to the launcher.

        With track_exit, the final snapshot of a session that shuts down on
        its own is retained until wait_for_exit() collects it. Otherwise it
        is dropped as soon as the session is removed.

        Raises:
            SessionPoolAtCapacity: If max_concurrent sessions are live
            SessionSpawnError: If the launcher fails to start the session
        """
        if len(self._entries) >= self.max_concurrent:
            raise SessionPoolAtCapacity(len(self._entries), self.max_concurrent)

        now = _now()
        session = WorkerSession(
            id=generate_session_id(),
            name=options.name,
            cwd=options.cwd,
            status=WorkerStatus.STARTING,
            started_at=now,
            last_activity_at=now,
        )
        entry = _Entry(session, track_exit)
        self._entries[session.id] = entry
        self._notify("on_session_added", session)

        try:
            await self.launcher.start(session, options, self.handle_event)
        except Exception as e:
            self._entries.pop(session.id, None)
            self._notify("on_session_removed", session.id)
            raise SessionSpawnError(e) from e

        logger.info(f"Spawned session {session.id} ({options.name})")
        return entry.session

    async def destroy(self, session_id: SessionId) -> None:
        """Stop a session and remove it from the pool."""
        entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFound(session_id)

        await self.launcher.stop(session_id)
        self._remove(session_id)
        self._aggregator.dismiss_all(session_id)

    async def shutdown_all(self) -> None:
        """Stop every session, then clear the pool."""
        ids = list(self._entries)
        results = await asyncio.gather(
            *(self.launcher.stop(sid) for sid in ids), return_exceptions=True
        )
        for sid, result in zip(ids, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to stop session {sid}: {result}")
        for sid in ids:
            self._remove(sid)
        self._aggregator.clear()

    async def wait_for_exit(self, session_id: SessionId) -> WorkerSession:
        """Wait until the session reports shutdown; returns its final snapshot.

        Raises:
            SessionNotFound: If the session is neither live nor a tracked exit
            SessionEndedInError: If the session shut down from the error state
        """
        entry = self._entries.get(session_id) or self._exited.pop(session_id, None)
        if entry is None:
            raise SessionNotFound(session_id)
        await entry.exited.wait()
        self._exited.pop(session_id, None)
        if entry.ended_in_error or entry.last_error is not None:
            raise SessionEndedInError(session_id, entry.last_error or "session reported error status")
        return entry.session

    def _remove(self, session_id: SessionId, exited: bool = False) -> None:
        entry = self._entries.pop(session_id, None)
        if entry is not None:
            entry.exited.set()
            if exited and entry.track_exit:
                self._exited[session_id] = entry
            self._notify("on_session_removed", session_id)

    # --- events ---

    def handle_event(self, event: WorkerEvent) -> None:
        """Apply a worker event to the pool.

        Raises:
            InvalidTransition: If a StatusChanged event requests an illegal move
        """
        entry = self._entries.get(event.session_id)
        if entry is None:
            logger.debug(f"Ignoring event for unknown session {event.session_id}")
            return

        now = _now()
        if isinstance(event, StatusChanged):
            entry.fsm.move_to(event.status)
            entry.session = replace(entry.session, status=event.status, last_activity_at=now)
            if event.status is WorkerStatus.IDLE:
                entry.last_error = None
        elif isinstance(event, Activity):
            entry.session = replace(
                entry.session,
                last_activity_at=event.last_activity_at,
                token_count=event.token_count,
            )
        elif isinstance(event, SessionFailed):
            entry.last_error = event.message
        elif isinstance(event, ShutdownComplete):
            entry.ended_in_error = entry.session.status is WorkerStatus.ERROR
            if entry.session.status is not WorkerStatus.SHUTDOWN and is_valid_worker_transition(
                entry.session.status, WorkerStatus.SHUTDOWN
            ):
                entry.fsm.move_to(WorkerStatus.SHUTDOWN)
                entry.session = replace(entry.session, status=WorkerStatus.SHUTDOWN, last_activity_at=now)

        self._notify("on_session_updated", entry.session)

        if isinstance(event, (ApprovalNeeded, SessionFailed, ShutdownComplete)):
            notification = worker_event_to_notification(event, entry.session.name, now)
            if notification:
                self._aggregator.add(notification)
                self._notify("on_notification", notification)

        if isinstance(event, ShutdownComplete):
            self._remove(event.session_id, exited=True)

    # --- queries ---

    def get(self, session_id: SessionId) -> WorkerSession:
        entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFound(session_id)
        return entry.session

    def list_sessions(self) -> list[WorkerSession]:
        """All live sessions, most recent activity first."""
        sessions = [e.session for e in self._entries.values()]
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    def get_notifications(self) -> list[SessionNotification]:
        return self._aggregator.get_notifications()

    def dismiss(self, session_id: SessionId, kind: NotificationKind) -> None:
        self._aggregator.dismiss(session_id, kind)

    @property
    def size(self) -> int:
        return len(self._entries)
