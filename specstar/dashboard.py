"""Dashboard refresh cycle.

Fetches every artifact stream concurrently, takes the live sessions from the
pool, and runs enrichment. A failing or missing integration contributes an
empty collection and an entry in `errors`; the refresh itself never fails.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from specstar.enrichment import IssueListModel, build_issue_list_model, enrich_issues
from specstar.integrations.contracts import (
    CodeHostClient,
    IssueFilter,
    IssueTrackerClient,
    SpecStoreClient,
)
from specstar.lib.types import Worktree
from specstar.sessions.pool import SessionPool

logger = logging.getLogger(__name__)

WorktreeLister = Callable[[], list[Worktree]]


@dataclass(frozen=True)
class DashboardSnapshot:
    model: IssueListModel
    errors: dict[str, str] = field(default_factory=dict)


async def _empty() -> list:
    return []


async def refresh_dashboard(
    issues: IssueTrackerClient | None = None,
    code_host: CodeHostClient | None = None,
    specs: SpecStoreClient | None = None,
    pool: SessionPool | None = None,
    worktrees: WorktreeLister | None = None,
    issue_filter: IssueFilter | None = None,
) -> DashboardSnapshot:
    fetches: dict[str, Awaitable[list]] = {
        "issues": issues.get_issues(issue_filter) if issues else _empty(),
        "prs": code_host.list_prs() if code_host else _empty(),
        "specs": specs.list_specs() if specs else _empty(),
        "worktrees": asyncio.to_thread(worktrees) if worktrees else _empty(),
    }
    results = await asyncio.gather(*fetches.values(), return_exceptions=True)

    data: dict[str, list] = {}
    errors: dict[str, str] = {}
    for name, result in zip(fetches, results):
        if isinstance(result, Exception):
            logger.warning(f"Dashboard refresh: {name} unavailable: {result}")
            errors[name] = str(result)
            data[name] = []
        elif isinstance(result, BaseException):
            raise result
        else:
            data[name] = list(result)

    sessions = pool.list_sessions() if pool else []
    result = enrich_issues(data["issues"], sessions, data["prs"], data["specs"], data["worktrees"])
    return DashboardSnapshot(model=build_issue_list_model(result), errors=errors)
