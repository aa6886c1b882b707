"""
GitHub code-host client backed by the gh CLI.

All calls shell out to `gh ... --json` with a timeout and map the output
onto PullRequest. gh failures are classified from stderr into the
integration error taxonomy.
"""

import asyncio
import json
import logging
import re
import subprocess
from datetime import datetime
from pathlib import Path

from specstar.enrichment import extract_identifier
from specstar.git.runner import run_git
from specstar.integrations.contracts import (
    CreatePROptions,
    IntegrationAuthError,
    IntegrationNetworkError,
    IntegrationNotFoundError,
    IntegrationRateLimitError,
)
from specstar.lib.ids import PrNumber, pr_number
from specstar.lib.types import CIStatus, PRState, PullRequest, ReviewDecision

logger = logging.getLogger(__name__)

SERVICE = "github"

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

PR_JSON_FIELDS = "number,title,author,state,headRefName,url,updatedAt,statusCheckRollup,reviewDecision,isDraft"
PR_LIST_LIMIT = 100

_FAIL_STATES = {"FAILURE", "ERROR"}
_FAIL_CONCLUSIONS = {"FAILURE", "TIMED_OUT", "CANCELLED"}
_PENDING_STATUSES = {"IN_PROGRESS", "QUEUED", "WAITING", "PENDING"}

_REPO_FROM_REMOTE = re.compile(r'github\.com[:/]([^/]+/[^/]+?)(?:\.git)?$')


class GithubCliMissing(IntegrationAuthError):
    def __init__(self):
        super().__init__(SERVICE, "gh CLI is not installed or not in PATH\n  Install: https://cli.github.com/")


def derive_ci_status(rollup: list[dict] | None) -> CIStatus:
    """Collapse statusCheckRollup into one CI status.

    Any failing check wins; otherwise anything still running (or completed
    without a conclusion) makes the whole thing pending.
    """
    if not rollup:
        return CIStatus.NONE

    pending = False
    for check in rollup:
        state = (check.get("state") or "").upper()
        status = (check.get("status") or "").upper()
        conclusion = (check.get("conclusion") or "").upper()

        if state in _FAIL_STATES or conclusion in _FAIL_CONCLUSIONS:
            return CIStatus.FAIL
        if state == "PENDING" or status in _PENDING_STATUSES:
            pending = True
        if status == "COMPLETED" and not conclusion:
            pending = True

    return CIStatus.PENDING if pending else CIStatus.PASS


def _parse_time(value: str) -> datetime:
    # gh emits "2024-05-01T12:00:00Z"
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def map_pr(raw: dict) -> PullRequest:
    """Map one `gh pr ... --json` object onto PullRequest."""
    if raw.get("isDraft"):
        state = PRState.DRAFT
    else:
        state = {
            "OPEN": PRState.OPEN,
            "CLOSED": PRState.CLOSED,
            "MERGED": PRState.MERGED,
        }.get(raw.get("state", ""), PRState.OPEN)

    review = None
    decision = (raw.get("reviewDecision") or "").lower()
    if decision in {d.value for d in ReviewDecision}:
        review = ReviewDecision(decision)

    head_ref = raw.get("headRefName", "")
    return PullRequest(
        number=pr_number(raw["number"]),
        title=raw.get("title", ""),
        author=(raw.get("author") or {}).get("login", ""),
        state=state,
        head_ref=head_ref,
        url=raw.get("url", ""),
        updated_at=_parse_time(raw["updatedAt"]),
        ci_status=derive_ci_status(raw.get("statusCheckRollup")),
        review_decision=review,
        ticket_id=extract_identifier(head_ref),
    )


def parse_repo_from_url(remote_url: str) -> str:
    """owner/name from an ssh or https GitHub remote URL."""
    match = _REPO_FROM_REMOTE.search(remote_url.strip())
    return match.group(1) if match else remote_url.strip()


def _classify(stderr: str, args: list[str], returncode: int):
    lower = stderr.lower()
    message = stderr.strip()
    if "rate limit" in lower:
        return IntegrationRateLimitError(SERVICE, message or "GitHub rate limit exceeded")
    if "not logged in" in lower or "authentication" in lower or "gh auth login" in lower:
        return IntegrationAuthError(SERVICE, message or "GitHub authentication failed")
    if "not found" in lower or "could not resolve" in lower or "404" in lower:
        return IntegrationNotFoundError(SERVICE, " ".join(args), message)
    return IntegrationNetworkError(SERVICE, message or f"gh exited with code {returncode}")


class GithubClient:
    """Code-host client for one repository."""

    def __init__(self, repo: str | None = None, cwd: Path | None = None):
        self.cwd = cwd or Path.cwd()
        self._repo = repo

    @property
    def repo(self) -> str:
        """owner/name, detected from the origin remote when not given."""
        if self._repo is None:
            result = run_git(["remote", "get-url", "origin"], self.cwd)
            if not result.success:
                raise IntegrationNotFoundError(
                    SERVICE, "origin", "Could not detect repository from git remote origin"
                )
            self._repo = parse_repo_from_url(result.stdout)
        return self._repo

    def _run_gh(self, args: list[str]) -> str:
        try:
            result = subprocess.run(
                ["gh", *args],
                capture_output=True,
                text=True,
                cwd=str(self.cwd),
                timeout=GH_TIMEOUT_SECONDS,
            )
        except FileNotFoundError:
            raise GithubCliMissing() from None
        except subprocess.TimeoutExpired:
            raise IntegrationNetworkError(SERVICE, "GitHub API timeout") from None

        if result.returncode != 0:
            error = _classify(result.stderr, args, result.returncode)
            logger.debug(f"gh {' '.join(args[:2])} failed: {error}")
            raise error
        return result.stdout

    async def _gh(self, args: list[str]) -> str:
        return await asyncio.to_thread(self._run_gh, args)

    @staticmethod
    def _load_json(output: str):
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            raise IntegrationNetworkError(SERVICE, "Invalid JSON from gh") from None

    async def list_prs(self) -> list[PullRequest]:
        output = await self._gh([
            "pr", "list", "--repo", self.repo,
            "--json", PR_JSON_FIELDS, "--limit", str(PR_LIST_LIMIT),
        ])
        if not output.strip():
            return []
        return [map_pr(raw) for raw in self._load_json(output)]

    async def get_pr(self, number: PrNumber) -> PullRequest:
        output = await self._gh(["pr", "view", str(number), "--repo", self.repo, "--json", PR_JSON_FIELDS])
        return map_pr(self._load_json(output))

    async def create_pr(self, options: CreatePROptions) -> PullRequest:
        args = [
            "pr", "create", "--repo", self.repo,
            "--title", options.title,
            "--body", options.body,
            "--head", options.head_branch,
        ]
        if options.base_branch:
            args += ["--base", options.base_branch]
        if options.draft:
            args.append("--draft")

        url = (await self._gh(args)).strip()
        match = re.search(r'/(\d+)$', url)
        if not match:
            raise IntegrationNetworkError(SERVICE, f"Could not parse PR number from gh output: {url!r}")
        return await self.get_pr(pr_number(int(match.group(1))))

    async def comment(self, number: PrNumber, body: str) -> None:
        await self._gh(["pr", "comment", str(number), "--repo", self.repo, "--body", body])

    async def approve_pr(self, number: PrNumber) -> None:
        await self._gh(["pr", "review", str(number), "--repo", self.repo, "--approve"])


def check_gh_available() -> tuple[bool, str]:
    """Check gh CLI is installed and authenticated.

    Returns: (ok, error_message)
    """
    try:
        result = subprocess.run(["gh", "auth", "status"], capture_output=True, text=True, timeout=10)
    except FileNotFoundError:
        return False, "GitHub CLI (gh) not found\n  Install: https://cli.github.com/"
    except subprocess.TimeoutExpired:
        return False, "GitHub CLI timed out"
    if result.returncode != 0:
        return False, "GitHub CLI not authenticated\n  Run: gh auth login"
    return True, ""
