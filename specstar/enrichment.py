"""
Issue enrichment.

Joins independently fetched artifacts (sessions, pull requests, specs,
worktrees) onto issues and derives a section and a status badge for each
issue. Everything here is pure: no I/O, no state between calls. Every pass
starts from scratch, so a refresh never carries stale links forward.

Linking rules:
- session: cwd -> worktree (path equal or path prefix) -> worktree branch
  -> issue (exact branch, then extracted identifier)
- pull request: head ref == issue branch, then ticket id, then identifier
  extracted from the head ref. When several PRs link to one issue the most
  recently updated wins; the others still count as linked.
- spec: linked issue identifier, case-insensitive
- worktree: branch, then extracted identifier

Every session and PR ends up either linked to an issue or in the unlinked
list, never both.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Sequence

from specstar.lib.types import (
    CIStatus,
    Issue,
    IssueStateType,
    PRState,
    PullRequest,
    Spec,
    SpecStatus,
    WorkerSession,
    WorkerStatus,
    Worktree,
)

IDENTIFIER_PATTERN = re.compile(r'^([A-Z]+-\d+)', re.IGNORECASE)


class Section(Enum):
    ATTENTION = "attention"
    ACTIVE = "active"
    BACKLOG = "backlog"


class Badge(Enum):
    APPROVAL = "apprvl"
    ERROR = "error"
    DONE = "done"
    WORKING = "wrkng"
    REVIEW = "review"
    CI_FAIL = "ci:fail"
    SPEC = "spec"
    IDLE = "idle"
    DRAFT = "draft"
    CI_PASS = "ci:pass"
    MERGED = "merged"
    NONE = "--"


# Rank 0 is the most urgent
BADGE_PRIORITY = {badge: rank for rank, badge in enumerate(Badge)}

SECTION_ORDER = {Section.ATTENTION: 0, Section.ACTIVE: 1, Section.BACKLOG: 2}

_SESSION_BADGES = {
    WorkerStatus.APPROVAL: Badge.APPROVAL,
    WorkerStatus.ERROR: Badge.ERROR,
    WorkerStatus.SHUTDOWN: Badge.DONE,
    WorkerStatus.WORKING: Badge.WORKING,
    WorkerStatus.IDLE: Badge.IDLE,
    WorkerStatus.STARTING: Badge.IDLE,
}


@dataclass(frozen=True)
class EnrichedIssue:
    issue: Issue
    sessions: tuple[WorkerSession, ...]
    section: Section
    badge: Badge
    pr: PullRequest | None = None
    spec: Spec | None = None
    worktree: Worktree | None = None


@dataclass(frozen=True)
class UnlinkedItem:
    """A PR or session that matched no issue. Exactly one of the two is set."""
    pr: PullRequest | None = None
    session: WorkerSession | None = None

    @property
    def kind(self) -> str:
        return "pr" if self.pr is not None else "session"

    @property
    def badge(self) -> Badge:
        if self.pr is not None:
            return resolve_pr_badge(self.pr)
        return resolve_session_badge(self.session)


@dataclass(frozen=True)
class EnrichmentResult:
    issues: list[EnrichedIssue] = field(default_factory=list)
    unlinked: list[UnlinkedItem] = field(default_factory=list)


@dataclass(frozen=True)
class IssueListModel:
    """Sectioned, sorted issue list for the dashboard."""
    attention: list[EnrichedIssue] = field(default_factory=list)
    active: list[EnrichedIssue] = field(default_factory=list)
    backlog: list[EnrichedIssue] = field(default_factory=list)
    unlinked: list[UnlinkedItem] = field(default_factory=list)


def extract_identifier(text: str) -> str | None:
    """Extract a TEAM-123 style identifier from a branch name or title.

    Tries the whole string first, then the part after the last "/".

        >>> extract_identifier("feature/auth-142-fix")
        'AUTH-142'
        >>> extract_identifier("123-test") is None
        True
    """
    match = IDENTIFIER_PATTERN.match(text)
    if match:
        return match.group(1).upper()

    slash = text.rfind("/")
    if slash != -1:
        match = IDENTIFIER_PATTERN.match(text[slash + 1:])
        if match:
            return match.group(1).upper()

    return None


def assign_section(
    issue: Issue,
    sessions: Sequence[WorkerSession],
    pr: PullRequest | None,
    spec: Spec | None,
) -> Section:
    """Pick the section for an issue. First matching rule wins."""
    closed = issue.state.type in (IssueStateType.COMPLETED, IssueStateType.CANCELED)

    for s in sessions:
        if s.status in (WorkerStatus.APPROVAL, WorkerStatus.ERROR):
            return Section.ATTENTION
        if s.status is WorkerStatus.SHUTDOWN and not closed:
            return Section.ATTENTION

    if spec is not None and spec.status is SpecStatus.PENDING:
        return Section.ATTENTION

    for s in sessions:
        if s.status in (WorkerStatus.WORKING, WorkerStatus.IDLE, WorkerStatus.STARTING):
            return Section.ACTIVE

    if pr is not None and pr.state in (PRState.OPEN, PRState.DRAFT):
        return Section.ACTIVE

    if issue.state.type is IssueStateType.STARTED:
        return Section.ACTIVE

    return Section.BACKLOG


def resolve_badge(
    sessions: Sequence[WorkerSession],
    pr: PullRequest | None,
    spec: Spec | None,
) -> Badge:
    """Most urgent badge across all signals linked to one issue."""
    candidates = [_SESSION_BADGES[s.status] for s in sessions]

    if pr is not None:
        if pr.ci_status is CIStatus.FAIL:
            candidates.append(Badge.CI_FAIL)
        if pr.state is PRState.MERGED:
            candidates.append(Badge.MERGED)
        if pr.state is PRState.OPEN:
            candidates.append(Badge.REVIEW)
        if pr.state is PRState.DRAFT:
            candidates.append(Badge.DRAFT)
        if pr.ci_status is CIStatus.PASS and pr.state is not PRState.MERGED:
            candidates.append(Badge.CI_PASS)

    if spec is not None and spec.status is SpecStatus.PENDING:
        candidates.append(Badge.SPEC)

    if not candidates:
        return Badge.NONE
    return min(candidates, key=BADGE_PRIORITY.__getitem__)


def resolve_session_badge(session: WorkerSession) -> Badge:
    """Badge for a session on its own (shutdown shows nothing)."""
    if session.status is WorkerStatus.SHUTDOWN:
        return Badge.NONE
    return _SESSION_BADGES[session.status]


def resolve_pr_badge(pr: PullRequest) -> Badge:
    """Badge for a PR on its own."""
    if pr.ci_status is CIStatus.FAIL:
        return Badge.CI_FAIL
    if pr.state is PRState.MERGED:
        return Badge.MERGED
    if pr.state is PRState.CLOSED:
        return Badge.NONE
    if pr.state is PRState.DRAFT:
        return Badge.DRAFT
    if pr.ci_status is CIStatus.PASS:
        return Badge.CI_PASS
    if pr.state is PRState.OPEN:
        return Badge.REVIEW
    return Badge.NONE


def _match_branch(
    branch: str,
    by_branch: dict[str, Issue],
    by_identifier: dict[str, Issue],
) -> Issue | None:
    issue = by_branch.get(branch)
    if issue is not None:
        return issue
    identifier = extract_identifier(branch)
    if identifier:
        return by_identifier.get(identifier)
    return None


def _match_session(
    session: WorkerSession,
    worktrees: Sequence[Worktree],
    by_branch: dict[str, Issue],
    by_identifier: dict[str, Issue],
) -> Issue | None:
    for wt in worktrees:
        if session.cwd == wt.path or session.cwd.startswith(wt.path + "/"):
            return _match_branch(wt.branch, by_branch, by_identifier)
    return None


def _match_pr(
    pr: PullRequest,
    by_branch: dict[str, Issue],
    by_identifier: dict[str, Issue],
) -> Issue | None:
    issue = by_branch.get(pr.head_ref)
    if issue is not None:
        return issue
    if pr.ticket_id:
        issue = by_identifier.get(pr.ticket_id.upper())
        if issue is not None:
            return issue
    identifier = extract_identifier(pr.head_ref)
    if identifier:
        return by_identifier.get(identifier)
    return None


def enrich_issues(
    issues: Sequence[Issue],
    sessions: Sequence[WorkerSession],
    prs: Sequence[PullRequest],
    specs: Sequence[Spec],
    worktrees: Sequence[Worktree],
) -> EnrichmentResult:
    """Link every artifact to its issue and derive section and badge."""
    by_branch: dict[str, Issue] = {}
    by_identifier: dict[str, Issue] = {}
    for issue in issues:
        by_identifier[issue.identifier.upper()] = issue
        if issue.branch:
            by_branch[issue.branch] = issue

    issue_sessions: dict[str, list[WorkerSession]] = {}
    linked_sessions: set[str] = set()
    for session in sessions:
        issue = _match_session(session, worktrees, by_branch, by_identifier)
        if issue is not None:
            issue_sessions.setdefault(issue.id, []).append(session)
            linked_sessions.add(session.id)

    issue_prs: dict[str, PullRequest] = {}
    linked_prs: set[int] = set()
    for pr in prs:
        issue = _match_pr(pr, by_branch, by_identifier)
        if issue is not None:
            current = issue_prs.get(issue.id)
            if current is None or pr.updated_at > current.updated_at:
                issue_prs[issue.id] = pr
            linked_prs.add(pr.number)

    specs_by_identifier = {s.issue_id.upper(): s for s in specs if s.issue_id}

    issue_worktrees: dict[str, Worktree] = {}
    for wt in worktrees:
        issue = _match_branch(wt.branch, by_branch, by_identifier)
        if issue is not None:
            issue_worktrees[issue.id] = wt

    enriched = []
    for issue in issues:
        linked = tuple(issue_sessions.get(issue.id, ()))
        pr = issue_prs.get(issue.id)
        spec = specs_by_identifier.get(issue.identifier.upper())
        enriched.append(EnrichedIssue(
            issue=issue,
            sessions=linked,
            pr=pr,
            spec=spec,
            worktree=issue_worktrees.get(issue.id),
            section=assign_section(issue, linked, pr, spec),
            badge=resolve_badge(linked, pr, spec),
        ))

    unlinked = [UnlinkedItem(pr=pr) for pr in prs if pr.number not in linked_prs]
    unlinked += [UnlinkedItem(session=s) for s in sessions if s.id not in linked_sessions]

    return EnrichmentResult(issues=enriched, unlinked=unlinked)


def last_activity_at(enriched: EnrichedIssue) -> datetime:
    """Latest of the issue update time, linked session activity and PR update."""
    times = [enriched.issue.updated_at]
    times += [s.last_activity_at for s in enriched.sessions]
    if enriched.pr is not None:
        times.append(enriched.pr.updated_at)
    return max(times)


def _backlog_rank(issue: Issue) -> int:
    # Priority 0 means "none" and sorts after low (4)
    return 5 if issue.priority == 0 else issue.priority


def sort_enriched_issues(issues: Sequence[EnrichedIssue]) -> list[EnrichedIssue]:
    """Order by section, then by the section's own ordering.

    - attention: badge priority, then issue update time (newest first)
    - active: most recent activity, then issue update time (newest first)
    - backlog: priority (none last), then issue update time (newest first)
    """
    return sorted(issues, key=_sort_key)


def _sort_key(e: EnrichedIssue) -> tuple[int, float, float]:
    # Timestamps are negated so newer sorts first
    updated = -e.issue.updated_at.timestamp()
    if e.section is Section.ATTENTION:
        return SECTION_ORDER[e.section], BADGE_PRIORITY[e.badge], updated
    if e.section is Section.ACTIVE:
        return SECTION_ORDER[e.section], -last_activity_at(e).timestamp(), updated
    return SECTION_ORDER[e.section], _backlog_rank(e.issue), updated


def build_issue_list_model(result: EnrichmentResult) -> IssueListModel:
    ordered = sort_enriched_issues(result.issues)
    return IssueListModel(
        attention=[e for e in ordered if e.section is Section.ATTENTION],
        active=[e for e in ordered if e.section is Section.ACTIVE],
        backlog=[e for e in ordered if e.section is Section.BACKLOG],
        unlinked=list(result.unlinked),
    )
