"""
Agent command configuration.

Loads agents.yaml to decide which CLI command starts an agent session. If no
config file exists, defaults are used.

COMMAND TEMPLATES
=================

Two templates exist:
- spawn: used when the step has no model hint
- spawn_with_model: used when a model hint is given

Templates support {variable} substitution:
- {prompt}: The initial prompt. If present in the template it is passed as a
  single CLI argument. If absent, the prompt goes via stdin.
- {model}: Model hint (spawn_with_model only)
- {cwd}: Working directory of the session
- {name}: Display name of the session

Example agents.yaml:

    commands:
      spawn: claude -p {prompt}
      spawn_with_model: claude --model {model} -p {prompt}
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

AGENTS_CONFIG_FILE = "agents.yaml"

DEFAULT_COMMANDS = {
    "spawn": "claude --print {prompt}",
    "spawn_with_model": "claude --print --model {model} {prompt}",
}

# Placeholder without braces so the leftover-variable check ignores it
_PROMPT_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"
_TEMPLATE_VAR = re.compile(r'\{(\w+)\}')


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    commands: dict[str, str] = field(default_factory=lambda: DEFAULT_COMMANDS.copy())


def load_agents_config(project_dir: Path | None) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If project_dir is None or the file doesn't exist, returns defaults.
    """
    if project_dir is None:
        return AgentsConfig()

    config_path = project_dir / AGENTS_CONFIG_FILE
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    commands = DEFAULT_COMMANDS.copy()
    if isinstance(data, dict) and isinstance(data.get("commands"), dict):
        for key, value in data["commands"].items():
            if key not in DEFAULT_COMMANDS:
                logger.warning(f"Ignoring unknown command '{key}' in {config_path}")
                continue
            commands[key] = str(value)
    return AgentsConfig(commands=commands)


@dataclass
class SpawnCommand:
    """Result of building a session spawn command."""
    cmd: list[str]  # Command ready for subprocess
    prompt_via_stdin: bool

    def get_stdin_input(self, prompt: str) -> str | None:
        """Return prompt if it should be passed via stdin, else None."""
        return prompt if self.prompt_via_stdin else None


def get_spawn_command(
    config: AgentsConfig,
    prompt: str,
    cwd: str,
    name: str,
    model: str | None = None,
) -> SpawnCommand:
    """Build the argv for spawning one agent session.

    The prompt is swapped for a placeholder before shell-lexing the template,
    so quotes or newlines inside it cannot break argument splitting.

    Example:
        >>> cfg = AgentsConfig()
        >>> get_spawn_command(cfg, "fix it", "/tmp/ws", "w1").cmd
        ['claude', '--print', 'fix it']
    """
    key = "spawn_with_model" if model else "spawn"
    template = config.commands[key]
    prompt_via_stdin = "{prompt}" not in template

    template = template.replace("{prompt}", _PROMPT_PLACEHOLDER)
    variables = {"cwd": cwd, "name": name, "model": model or ""}
    for var, value in variables.items():
        template = template.replace(f"{{{var}}}", shlex.quote(value))

    remaining = _TEMPLATE_VAR.findall(template)
    if remaining:
        logger.error(f"Spawn template '{key}' has unsubstituted variables: {remaining}")

    cmd = [prompt if arg == _PROMPT_PLACEHOLDER else arg for arg in shlex.split(template)]
    return SpawnCommand(cmd=cmd, prompt_via_stdin=prompt_via_stdin)


def check_binary_available(config: AgentsConfig, model: str | None = None) -> bool:
    """Check that the binary of the relevant spawn template is on PATH."""
    key = "spawn_with_model" if model else "spawn"
    parts = shlex.split(config.commands[key])
    return bool(parts) and shutil.which(parts[0]) is not None
