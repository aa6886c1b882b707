"""Worker session events and the notification aggregator.

Worker sessions report what they are doing as a stream of small immutable
events. A few of those (approval requests, errors, completion) also need the
operator's attention; they are turned into SessionNotification objects and
kept in a NotificationAggregator, which holds at most one notification per
(session, kind) pair.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Union

from specstar.lib.ids import SessionId
from specstar.lib.types import WorkerStatus


class NotificationKind(Enum):
    APPROVAL_NEEDED = "approval_needed"
    ERROR = "error"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ToolCall:
    """A tool call awaiting an approval decision."""
    tool_name: str
    args: str


@dataclass(frozen=True)
class SessionNotification:
    """Notification surfaced from a worker session to the operator."""
    session_id: SessionId
    session_name: str
    kind: NotificationKind
    message: str
    timestamp: datetime
    tool_call: ToolCall | None = None


# --- Worker events (worker -> observer) ---

@dataclass(frozen=True)
class StatusChanged:
    session_id: SessionId
    status: WorkerStatus


@dataclass(frozen=True)
class Activity:
    session_id: SessionId
    last_activity_at: datetime
    token_count: int


@dataclass(frozen=True)
class ApprovalNeeded:
    session_id: SessionId
    tool_name: str
    args: str


@dataclass(frozen=True)
class SessionFailed:
    session_id: SessionId
    message: str
    stack: str | None = None


@dataclass(frozen=True)
class ShutdownComplete:
    session_id: SessionId


WorkerEvent = Union[StatusChanged, Activity, ApprovalNeeded, SessionFailed, ShutdownComplete]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_approval_event(event: WorkerEvent) -> bool:
    return isinstance(event, ApprovalNeeded)


def worker_event_to_notification(
    event: WorkerEvent,
    session_name: str,
    timestamp: datetime | None = None,
) -> SessionNotification | None:
    """Convert a worker event into a notification, if it warrants one.

    Returns None for events that are purely informational (status changes,
    activity updates).
    """
    ts = timestamp or _now()

    if isinstance(event, ApprovalNeeded):
        return SessionNotification(
            session_id=event.session_id,
            session_name=session_name,
            kind=NotificationKind.APPROVAL_NEEDED,
            message=f"Tool call requires approval: {event.tool_name}",
            timestamp=ts,
            tool_call=ToolCall(tool_name=event.tool_name, args=event.args),
        )
    if isinstance(event, SessionFailed):
        return SessionNotification(
            session_id=event.session_id,
            session_name=session_name,
            kind=NotificationKind.ERROR,
            message=event.message,
            timestamp=ts,
        )
    if isinstance(event, ShutdownComplete):
        return SessionNotification(
            session_id=event.session_id,
            session_name=session_name,
            kind=NotificationKind.COMPLETED,
            message=f'Session "{session_name}" completed',
            timestamp=ts,
        )
    return None


class NotificationAggregator:
    """Cross-session notification store, deduplicated on (session, kind).

    A second notification of the same kind for the same session replaces the
    first one rather than being appended.
    """

    def __init__(self):
        self._notifications: dict[tuple[str, NotificationKind], SessionNotification] = {}

    def add(self, notification: SessionNotification) -> None:
        self._notifications[(notification.session_id, notification.kind)] = notification

    def dismiss(self, session_id: SessionId, kind: NotificationKind) -> None:
        self._notifications.pop((session_id, kind), None)

    def dismiss_all(self, session_id: SessionId) -> None:
        for key in [k for k in self._notifications if k[0] == session_id]:
            del self._notifications[key]

    def clear(self) -> None:
        self._notifications.clear()

    def get_notifications(self) -> list[SessionNotification]:
        """Notifications for display.

        Approval requests always come first; within each tier the most
        recent notification comes first.
        """
        newest_first = sorted(self._notifications.values(), key=lambda n: n.timestamp, reverse=True)
        return sorted(newest_first, key=lambda n: n.kind is not NotificationKind.APPROVAL_NEEDED)

    @property
    def count(self) -> int:
        return len(self._notifications)

    @property
    def approval_count(self) -> int:
        return sum(1 for n in self._notifications.values() if n.kind is NotificationKind.APPROVAL_NEEDED)
