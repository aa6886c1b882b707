"""Tests for specstar.git module."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from specstar.git.runner import GitResult, run_git
from specstar.git.worktree import (
    WorktreeError,
    WorktreeExists,
    WorktreeNotFound,
    create_worktree,
    list_worktrees,
    parse_porcelain,
    remove_worktree,
)

PORCELAIN = """worktree /repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /worktrees/auth-142-login
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feature/AUTH-142-login

worktree /worktrees/detached
HEAD 3333333333333333333333333333333333333333
detached
"""


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        assert GitResult(returncode=0, stdout="ok", stderr="").success is True

    def test_failure_when_returncode_nonzero(self):
        assert GitResult(returncode=1, stdout="", stderr="error").success is False

    def test_failure_when_timed_out(self):
        assert GitResult(returncode=0, stdout="ok", stderr="", timed_out=True).success is False


class TestRunGit:
    """Test run_git function."""

    @patch("specstar.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["worktree", "list"], Path("/my/repo"))
        assert mock_run.call_args[0][0] == ["git", "-C", "/my/repo", "worktree", "list"]

    @patch("specstar.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("specstar.git.runner.subprocess.run")
    def test_handles_missing_git(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        result = run_git(["status"], Path("/tmp"))
        assert result.returncode == 127
        assert not result.success


class TestParsePorcelain:
    """Tests for parse_porcelain()."""

    def test_parses_all_blocks(self):
        worktrees = parse_porcelain(PORCELAIN)
        assert [wt.path for wt in worktrees] == ["/repo", "/worktrees/auth-142-login", "/worktrees/detached"]
        assert worktrees[0].branch == "main"
        assert worktrees[1].branch == "feature/AUTH-142-login"
        assert worktrees[1].commit.startswith("2222")

    def test_detached_has_empty_branch(self):
        assert parse_porcelain(PORCELAIN)[2].branch == ""

    def test_empty_output(self):
        assert parse_porcelain("") == []


class TestListWorktrees:
    @patch("specstar.git.worktree.run_git")
    def test_marks_dirty(self, mock_git):
        def fake(args, cwd, timeout=30):
            if args[0] == "worktree":
                return GitResult(0, PORCELAIN, "")
            dirty = str(cwd) == "/worktrees/auth-142-login"
            return GitResult(0, " M file.py\n" if dirty else "", "")

        mock_git.side_effect = fake
        worktrees = list_worktrees(Path("/repo"))
        assert [wt.dirty for wt in worktrees] == [False, True, False]

    @patch("specstar.git.worktree.run_git")
    def test_skip_dirty_check(self, mock_git):
        mock_git.return_value = GitResult(0, PORCELAIN, "")
        list_worktrees(Path("/repo"), check_dirty=False)
        mock_git.assert_called_once()

    @patch("specstar.git.worktree.run_git")
    def test_raises_on_failure(self, mock_git):
        mock_git.return_value = GitResult(128, "", "fatal: not a git repository")
        with pytest.raises(WorktreeError, match="not a git repository"):
            list_worktrees(Path("/nowhere"))


class TestCreateRemoveWorktree:
    @patch("specstar.git.worktree.run_git")
    def test_creates_new_branch(self, mock_git, tmp_path):
        mock_git.side_effect = [GitResult(1, "", ""), GitResult(0, "", "")]
        wt = create_worktree(Path("/repo"), "feature/AUTH-1", tmp_path, base_ref="main")
        assert wt.branch == "feature/AUTH-1"
        assert wt.path == str((tmp_path / "feature-AUTH-1").resolve())
        add_args = mock_git.call_args_list[1][0][0]
        assert add_args[:3] == ["worktree", "add", "-b"]
        assert add_args[-1] == "main"

    @patch("specstar.git.worktree.run_git")
    def test_existing_branch_checked_out(self, mock_git, tmp_path):
        mock_git.side_effect = [
            GitResult(0, "", ""),
            GitResult(128, "", "fatal: 'main' is already checked out at '/repo'"),
        ]
        with pytest.raises(WorktreeExists):
            create_worktree(Path("/repo"), "main", tmp_path)

    @patch("specstar.git.worktree.run_git")
    def test_remove_missing(self, mock_git):
        mock_git.return_value = GitResult(128, "", "fatal: '/x' is not a working tree")
        with pytest.raises(WorktreeNotFound):
            remove_worktree(Path("/repo"), Path("/x"))

    @patch("specstar.git.worktree.run_git")
    def test_remove_force(self, mock_git):
        mock_git.return_value = GitResult(0, "", "")
        remove_worktree(Path("/repo"), Path("/x"), force=True)
        assert mock_git.call_args[0][0] == ["worktree", "remove", "/x", "--force"]
