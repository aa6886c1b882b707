"""Typed identifiers for specstar.

Each identifier kind is a distinct NewType so that, for example, a session ID
cannot be passed where a workflow ID is expected without a type checker
noticing. Values are only built through the factory functions below, which
validate (and where sensible, normalize) their input.

Usage:
    from specstar.lib.ids import issue_identifier, session_id

    ident = issue_identifier("auth-142")   # -> "AUTH-142"
    sid = generate_session_id()            # -> "s-k3v9x0qa"
"""

import re
import secrets
import string
from typing import NewType

IssueId = NewType("IssueId", str)
IssueIdentifier = NewType("IssueIdentifier", str)
TeamId = NewType("TeamId", str)
PrNumber = NewType("PrNumber", int)
WorktreePath = NewType("WorktreePath", str)
SpecId = NewType("SpecId", str)
SessionId = NewType("SessionId", str)
WorkflowId = NewType("WorkflowId", str)
WorkflowHandleId = NewType("WorkflowHandleId", str)

# Team-scoped human readable code, e.g. AUTH-142
ISSUE_IDENTIFIER_PATTERN = re.compile(r'^[A-Z]+-\d+$')
SESSION_ID_PATTERN = re.compile(r'^s-[a-z0-9]+$')
WORKFLOW_ID_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]*$')
HANDLE_ID_PATTERN = re.compile(r'^wh-[a-z0-9]+$')

RANDOM_SUFFIX_LEN = 8
_ALPHABET = string.ascii_lowercase + string.digits


def _require_text(kind: str, value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{kind} must be a non-empty string, got {value!r}")
    return value.strip()


def issue_id(value: str) -> IssueId:
    """Opaque issue-tracker ID (the tracker's internal UUID)."""
    return IssueId(_require_text("Issue id", value))


def issue_identifier(value: str) -> IssueIdentifier:
    """Human-readable issue code, normalized to uppercase."""
    text = _require_text("Issue identifier", value).upper()
    if not ISSUE_IDENTIFIER_PATTERN.match(text):
        raise ValueError(f"Invalid issue identifier '{value}' (expected TEAM-123)")
    return IssueIdentifier(text)


def team_id(value: str) -> TeamId:
    return TeamId(_require_text("Team id", value))


def pr_number(value: int) -> PrNumber:
    """Pull request number, must be a positive integer."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"PR number must be a positive integer, got {value!r}")
    return PrNumber(value)


def worktree_path(value: str) -> WorktreePath:
    """Filesystem path of a worktree, without a trailing separator."""
    text = _require_text("Worktree path", value)
    if len(text) > 1:
        text = text.rstrip("/")
    return WorktreePath(text)


def spec_id(value: str) -> SpecId:
    return SpecId(_require_text("Spec id", value))


def session_id(value: str) -> SessionId:
    text = _require_text("Session id", value)
    if not SESSION_ID_PATTERN.match(text):
        raise ValueError(f"Invalid session id '{value}' (expected s-<alnum>)")
    return SessionId(text)


def workflow_id(value: str) -> WorkflowId:
    text = _require_text("Workflow id", value)
    if not WORKFLOW_ID_PATTERN.match(text):
        raise ValueError(
            f"Invalid workflow id '{value}' (lowercase letters, digits, '-' and '_')"
        )
    return WorkflowId(text)


def workflow_handle_id(value: str) -> WorkflowHandleId:
    text = _require_text("Workflow handle id", value)
    if not HANDLE_ID_PATTERN.match(text):
        raise ValueError(f"Invalid workflow handle id '{value}'")
    return WorkflowHandleId(text)


def _random_suffix() -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(RANDOM_SUFFIX_LEN))


def generate_session_id() -> SessionId:
    """New random session ID in the format ``s-<random8>``."""
    return SessionId(f"s-{_random_suffix()}")


def generate_handle_id() -> WorkflowHandleId:
    """New random workflow handle ID in the format ``wh-<random8>``."""
    return WorkflowHandleId(f"wh-{_random_suffix()}")
