"""
Typed contracts for external integrations.

specstar consumes three kinds of client: an issue tracker, a code host and
a spec store. Only their shapes are fixed here; concrete clients live next
to this module (github.py) or are supplied by the caller.

Every client raises errors from one closed taxonomy, each carrying the
service name:

    IntegrationAuthError       credentials missing or rejected
    IntegrationNotFoundError   resource does not exist
    IntegrationRateLimitError  throttled; retry_after_seconds when known
    IntegrationNetworkError    transport failure or unexpected response
"""

from dataclasses import dataclass
from typing import Protocol

from specstar.lib.ids import IssueId, PrNumber, SpecId, TeamId
from specstar.lib.types import Issue, IssueState, PullRequest, Spec, SpecStatus


class IntegrationError(Exception):
    """Base class for integration failures."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"[{service}] {message}")


class IntegrationAuthError(IntegrationError):
    pass


class IntegrationNotFoundError(IntegrationError):
    def __init__(self, service: str, resource_id: str, message: str = ""):
        self.resource_id = resource_id
        super().__init__(service, message or f"{resource_id} not found")


class IntegrationRateLimitError(IntegrationError):
    def __init__(self, service: str, message: str = "Rate limited", retry_after_seconds: float | None = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(service, message)


class IntegrationNetworkError(IntegrationError):
    pass


@dataclass(frozen=True)
class IssueFilter:
    team_id: TeamId | None = None
    assignee: str | None = None
    state_types: tuple[str, ...] = ()
    limit: int = 100


@dataclass(frozen=True)
class IssuePatch:
    title: str | None = None
    description: str | None = None
    state_id: str | None = None
    priority: int | None = None
    assignee: str | None = None


@dataclass(frozen=True)
class CreatePROptions:
    title: str
    body: str
    head_branch: str
    base_branch: str | None = None
    draft: bool = False


class IssueTrackerClient(Protocol):
    async def get_issues(self, issue_filter: IssueFilter | None = None) -> list[Issue]: ...

    async def get_issue(self, issue_id: IssueId) -> Issue: ...

    async def get_states(self, team_id: TeamId) -> list[IssueState]: ...

    async def update_issue(self, issue_id: IssueId, patch: IssuePatch) -> Issue: ...

    async def add_comment(self, issue_id: IssueId, body: str) -> None: ...


class CodeHostClient(Protocol):
    async def list_prs(self) -> list[PullRequest]: ...

    async def get_pr(self, number: PrNumber) -> PullRequest: ...

    async def create_pr(self, options: CreatePROptions) -> PullRequest: ...

    async def comment(self, number: PrNumber, body: str) -> None: ...

    async def approve_pr(self, number: PrNumber) -> None: ...


class SpecStoreClient(Protocol):
    async def list_specs(self) -> list[Spec]: ...

    async def get_spec(self, spec_id: SpecId) -> Spec: ...

    async def create_spec(self, title: str, issue_id: str | None, content: str) -> Spec: ...

    async def update_spec_status(self, spec_id: SpecId, status: SpecStatus) -> Spec: ...
