"""
Shared data types for specstar.

Snapshots of the artifacts the dashboard correlates: issues from the issue
tracker, worker sessions from the session pool, pull requests from the code
host, specs from the spec store, and local git worktrees. Kept in one module
so enrichment, sessions and integrations can share them without circular
imports.

All snapshots are frozen; a refresh produces new objects rather than mutating
old ones.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from specstar.lib.ids import IssueId, PrNumber, SessionId, SpecId, WorktreePath


class IssueStateType(Enum):
    """Issue tracker's built-in lifecycle classification."""
    TRIAGE = "triage"
    BACKLOG = "backlog"
    UNSTARTED = "unstarted"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELED = "canceled"


class WorkerStatus(Enum):
    """Lifecycle status of a worker session. Values match FSM state strings."""
    STARTING = "starting"
    IDLE = "idle"
    WORKING = "working"
    APPROVAL = "approval"
    ERROR = "error"
    SHUTDOWN = "shutdown"


class SpecStatus(Enum):
    """Review status of a spec document. Values match FSM state strings."""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class PRState(Enum):
    OPEN = "open"
    DRAFT = "draft"
    CLOSED = "closed"
    MERGED = "merged"


class CIStatus(Enum):
    NONE = "none"
    PENDING = "pending"
    PASS = "pass"
    FAIL = "fail"


class ReviewDecision(Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    REVIEW_REQUIRED = "review_required"


@dataclass(frozen=True)
class IssueState:
    """Workflow state attached to an issue."""
    id: str
    name: str
    type: IssueStateType


@dataclass(frozen=True)
class Issue:
    """An issue as fetched from the issue tracker."""
    id: IssueId
    identifier: str  # e.g. "AUTH-142"
    title: str
    state: IssueState
    url: str
    updated_at: datetime
    priority: int = 0  # 0 = none, 1 = urgent ... 4 = low
    description: str | None = None
    assignee: str | None = None
    branch: str | None = None  # Branch name suggested by the tracker


@dataclass(frozen=True)
class WorkerSession:
    """Observed snapshot of one agent worker session."""
    id: SessionId
    name: str
    cwd: str
    status: WorkerStatus
    started_at: datetime
    last_activity_at: datetime
    token_count: int = 0


@dataclass(frozen=True)
class PullRequest:
    """A pull request on the code host."""
    number: PrNumber
    title: str
    author: str
    state: PRState
    head_ref: str  # Branch the PR is opened from
    url: str
    updated_at: datetime
    ci_status: CIStatus = CIStatus.NONE
    review_decision: ReviewDecision | None = None
    ticket_id: str | None = None  # Issue identifier extracted from the head ref


@dataclass(frozen=True)
class Spec:
    """A spec document from the spec store, optionally linked to an issue."""
    id: SpecId
    title: str
    status: SpecStatus
    url: str
    updated_at: datetime
    issue_id: str | None = None  # Linked issue identifier, e.g. "AUTH-142"
    content: str = ""


@dataclass(frozen=True)
class Worktree:
    """A local git worktree."""
    path: WorktreePath
    branch: str
    dirty: bool = False
    commit: str = ""
