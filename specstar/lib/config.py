"""
Configuration loading.

Settings come from an optional <project_dir>/specstar.env, and any
SPECSTAR_* variable in the process environment overrides the file.

Example specstar.env:

    SPECSTAR_MAX_SESSIONS=4
    SPECSTAR_MODEL=claude-opus
    SPECSTAR_WORKFLOW_DIRS=tools/workflows:/opt/shared/workflows
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from specstar.lib import envparse

logger = logging.getLogger(__name__)

CONFIG_FILE = "specstar.env"
ENV_PREFIX = "SPECSTAR_"

DEFAULT_MAX_SESSIONS = 8
DEFAULT_MODEL = "claude-sonnet"
DEFAULT_WORKTREE_BASE = "../worktrees"
DEFAULT_MAX_HISTORY = 100


@dataclass(frozen=True)
class SpecstarConfig:
    project_dir: Path
    state_path: Path
    workflow_dirs: tuple[Path, ...] = ()
    max_concurrent_sessions: int = DEFAULT_MAX_SESSIONS
    default_model: str = DEFAULT_MODEL
    worktree_base: str = DEFAULT_WORKTREE_BASE
    max_history: int = DEFAULT_MAX_HISTORY
    use_wal: bool = True
    linear_api_key: str | None = field(default=None, repr=False)
    notion_api_key: str | None = field(default=None, repr=False)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ValueError(f"{key} must be at least 1, got {value}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config(project_dir: Path, environ: Mapping[str, str] | None = None) -> SpecstarConfig:
    """Load specstar.env (if present) and apply SPECSTAR_* overrides.

    Raises:
        ValueError: If the env file is malformed or a number is invalid
    """
    project_dir = Path(project_dir)
    environ = os.environ if environ is None else environ

    env: dict[str, str] = {}
    config_path = project_dir / CONFIG_FILE
    if config_path.exists():
        env.update(envparse.load_env(config_path))
    env.update({k: v for k, v in environ.items() if k.startswith(ENV_PREFIX)})

    state_path = Path(env.get("SPECSTAR_STATE_PATH") or project_dir / ".specstar" / "state.json")
    if not state_path.is_absolute():
        state_path = project_dir / state_path

    workflow_dirs = tuple(
        Path(d) for d in env.get("SPECSTAR_WORKFLOW_DIRS", "").split(":") if d.strip()
    )

    config = SpecstarConfig(
        project_dir=project_dir,
        state_path=state_path,
        workflow_dirs=workflow_dirs,
        max_concurrent_sessions=_int(env, "SPECSTAR_MAX_SESSIONS", DEFAULT_MAX_SESSIONS),
        default_model=env.get("SPECSTAR_MODEL") or DEFAULT_MODEL,
        worktree_base=env.get("SPECSTAR_WORKTREE_BASE") or DEFAULT_WORKTREE_BASE,
        max_history=_int(env, "SPECSTAR_MAX_HISTORY", DEFAULT_MAX_HISTORY),
        use_wal=_bool(env, "SPECSTAR_USE_WAL", True),
        linear_api_key=env.get("SPECSTAR_LINEAR_API_KEY") or None,
        notion_api_key=env.get("SPECSTAR_NOTION_API_KEY") or None,
    )
    logger.debug(f"Loaded config for {project_dir}: {config}")
    return config
