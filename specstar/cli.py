#!/usr/bin/env python3
"""specstar CLI entrypoint."""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from specstar.lib.config import load_config
from specstar.state.manager import StateError, StateManager
from specstar.workflow.engine import compute_waves, validate_workflow
from specstar.workflow.sources import default_sources, discover_workflows
from specstar.workflow.types import WorkflowError, WorkflowNotFound, WorkflowValidationError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _setup_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else os.environ.get("SPECSTAR_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _project_dir(args) -> Path:
    return Path(args.cwd).resolve()


def _find_workflow(args):
    config = load_config(_project_dir(args))
    for definition in discover_workflows(default_sources(_project_dir(args), config.workflow_dirs)):
        if definition.id == args.id:
            return definition
    raise WorkflowNotFound(args.id)


def cmd_workflows(args) -> int:
    config = load_config(_project_dir(args))
    definitions = discover_workflows(default_sources(_project_dir(args), config.workflow_dirs))
    if not definitions:
        print("No workflows found")
        return EXIT_OK
    for d in definitions:
        print(f"{d.id:<20} {d.name:<28} {len(d.steps)} steps  {d.source_path}")
    return EXIT_OK


def cmd_validate(args) -> int:
    definition = _find_workflow(args)
    try:
        validate_workflow(definition)
    except WorkflowValidationError as e:
        print(f"INVALID: {definition.id}")
        for issue in e.issues:
            print(f"  - {issue}")
        return EXIT_FAILED
    print(f"OK: {definition.id} ({len(definition.steps)} steps)")
    return EXIT_OK


def cmd_waves(args) -> int:
    definition = _find_workflow(args)
    validate_workflow(definition)
    for index, wave in enumerate(compute_waves(definition)):
        print(f"wave {index}: {', '.join(wave)}")
    return EXIT_OK


def _parse_vars(pairs: list[str]) -> dict[str, str]:
    variables = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"--var expects key=value, got {pair!r}")
        variables[key] = value
    return variables


def cmd_run(args) -> int:
    # Imported here: pulls in prefect, which is slow to import
    from specstar.workflow.flow import run_workflow

    try:
        variables = _parse_vars(args.var or [])
    except ValueError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG

    try:
        result = asyncio.run(run_workflow(
            workflow_id=args.id,
            cwd=str(_project_dir(args)),
            issue_id=args.issue,
            variables=variables,
        ))
    except WorkflowError as e:
        print(f"FAILED: {e}")
        return EXIT_FAILED

    print(json.dumps(result, indent=2))
    return EXIT_OK


def _state_manager(args) -> StateManager:
    config = load_config(_project_dir(args))
    return StateManager(config.state_path, max_history=config.max_history, use_wal=config.use_wal)


async def _state_command(args) -> int:
    manager = _state_manager(args)
    replayed = await manager.initialize()

    if args.state_cmd == "recover":
        print(f"Replayed {replayed} WAL entries into {manager.path}")
    elif args.state_cmd == "snapshot":
        snapshot = await manager.create_snapshot({"source": "cli"})
        print(snapshot.id)
    elif args.state_cmd == "snapshots":
        for snapshot_id in manager.list_snapshots():
            print(snapshot_id)
    elif args.state_cmd == "restore":
        await manager.restore_snapshot(args.snapshot)
        print(f"Restored snapshot {args.snapshot}")
    else:
        print(json.dumps(manager.get_state(), indent=2))

    await manager.destroy()
    return EXIT_OK


def cmd_state(args) -> int:
    try:
        return asyncio.run(_state_command(args))
    except StateError as e:
        print(f"ERROR: {e}")
        return EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="specstar", description="Agent session and workflow orchestration")
    parser.add_argument("--cwd", default=".", help="Project directory (default: current)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # specstar workflows
    p_workflows = subparsers.add_parser("workflows", help="List discovered workflows")
    p_workflows.set_defaults(func=cmd_workflows)

    # specstar validate
    p_validate = subparsers.add_parser("validate", help="Validate a workflow definition")
    p_validate.add_argument("id", help="Workflow ID")
    p_validate.set_defaults(func=cmd_validate)

    # specstar waves
    p_waves = subparsers.add_parser("waves", help="Show the execution waves of a workflow")
    p_waves.add_argument("id", help="Workflow ID")
    p_waves.set_defaults(func=cmd_waves)

    # specstar run
    p_run = subparsers.add_parser("run", help="Run a workflow to completion")
    p_run.add_argument("id", help="Workflow ID")
    p_run.add_argument("--issue", "-i", help="Issue identifier for {{issueId}}")
    p_run.add_argument("--var", action="append", metavar="KEY=VALUE", help="Prompt variable (repeatable)")
    p_run.add_argument("--cwd", default=argparse.SUPPRESS, help="Project directory the sessions run in")
    p_run.set_defaults(func=cmd_run)

    # specstar state
    p_state = subparsers.add_parser("state", help="Inspect and manage persisted state")
    p_state.set_defaults(func=cmd_state)
    state_sub = p_state.add_subparsers(dest="state_cmd")
    state_sub.add_parser("show", help="Print current state")
    state_sub.add_parser("snapshot", help="Create a snapshot and print its id")
    state_sub.add_parser("snapshots", help="List snapshot ids")
    p_restore = state_sub.add_parser("restore", help="Restore a snapshot")
    p_restore.add_argument("snapshot", help="Snapshot ID")
    state_sub.add_parser("recover", help="Replay the write-ahead log")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        return args.func(args)
    except WorkflowNotFound as e:
        print(f"ERROR: {e}")
        return EXIT_FAILED
    except WorkflowValidationError as e:
        print(f"ERROR: {e}")
        return EXIT_FAILED
    except ValueError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
