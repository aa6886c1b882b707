"""
Workflow definition sources.

A source is anything with a list() method returning WorkflowDefinitions.
Two kinds exist:

- DirectorySource: reads *.json definition files from one directory
- BuiltinSource: the workflows shipped with specstar

Discovery walks sources in priority order; the first definition seen for an
id wins. A broken file or a failing source is skipped, never fatal.

Definition file format:

    {
      "id": "ship-feature",
      "name": "Ship Feature",
      "steps": [
        {"id": "plan", "name": "Plan", "prompt": "Plan {{issueId}}"},
        {"id": "build", "name": "Build", "prompt": "...", "depends_on": ["plan"]}
      ]
    }
"""

import logging
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from specstar.lib.ids import workflow_id
from specstar.lib.validate import SchemaValidationError, validate_file
from specstar.workflow.builtins import BUILTIN_WORKFLOWS
from specstar.workflow.types import WorkflowDefinition, WorkflowStep

logger = logging.getLogger(__name__)

WORKFLOW_SCHEMA = "workflow"


class WorkflowSource(Protocol):
    def list(self) -> list[WorkflowDefinition]: ...


def parse_definition(data: dict, source_path: str = "") -> WorkflowDefinition:
    """Build a WorkflowDefinition from schema-checked JSON data.

    Raises:
        ValueError: If the workflow id is malformed
    """
    steps = []
    for raw in data["steps"]:
        depends_on = raw.get("depends_on", raw.get("dependsOn", []))
        steps.append(WorkflowStep(
            id=raw["id"],
            name=raw["name"],
            prompt=raw["prompt"],
            depends_on=tuple(depends_on),
            model=raw.get("model"),
        ))
    return WorkflowDefinition(
        id=workflow_id(data["id"]),
        name=data["name"],
        steps=tuple(steps),
        description=data.get("description", ""),
        source_path=source_path,
    )


class DirectorySource:
    """Definitions from *.json files in one directory, in filename order."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def __repr__(self) -> str:
        return f"DirectorySource({str(self.directory)!r})"

    def list(self) -> list[WorkflowDefinition]:
        if not self.directory.is_dir():
            return []

        definitions = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                data = validate_file(path, WORKFLOW_SCHEMA)
                definitions.append(parse_definition(data, str(path)))
            except (SchemaValidationError, ValueError) as e:
                logger.warning(f"Skipping workflow file {path}: {e}")
        return definitions


class BuiltinSource:
    def __init__(self, definitions: Iterable[WorkflowDefinition] = BUILTIN_WORKFLOWS):
        self.definitions = list(definitions)

    def __repr__(self) -> str:
        return "BuiltinSource()"

    def list(self) -> list[WorkflowDefinition]:
        return list(self.definitions)


def default_workflow_dirs(cwd: Path, extra_dirs: Sequence[Path] = ()) -> list[Path]:
    """Directories searched for workflow files, highest priority first."""
    dirs = [cwd / ".specstar" / "workflows"]
    dirs.append(Path.home() / ".omp" / "agent" / "workflows")
    dirs.append(cwd / ".omp" / "workflows")
    dirs.extend(Path(d) if Path(d).is_absolute() else cwd / d for d in extra_dirs)
    return dirs


def default_sources(cwd: Path, extra_dirs: Sequence[Path] = ()) -> list[WorkflowSource]:
    """Directory sources in priority order, then the built-in workflows."""
    sources: list[WorkflowSource] = [DirectorySource(d) for d in default_workflow_dirs(cwd, extra_dirs)]
    sources.append(BuiltinSource())
    return sources


def discover_workflows(sources: Iterable[WorkflowSource]) -> list[WorkflowDefinition]:
    """Collect definitions from all sources; the first one seen for an id wins."""
    seen: set[str] = set()
    definitions = []
    for source in sources:
        try:
            found = source.list()
        except Exception:
            logger.warning(f"Workflow source {source!r} failed, skipping", exc_info=True)
            continue
        for definition in found:
            if definition.id in seen:
                logger.debug(f"Ignoring {definition.id} from {definition.source_path}: already defined")
                continue
            seen.add(definition.id)
            definitions.append(definition)
    return definitions
