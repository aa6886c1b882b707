"""Prefect flow for running one workflow to completion.

The engine itself is plain asyncio; this wrapper exists so that workflow
runs started from the CLI (or a Prefect deployment) show up as flow runs
with their parameters, final state and step summary.
"""

import logging
from pathlib import Path

from prefect import flow
from pydantic import BaseModel, Field

from specstar.lib.agents_config import load_agents_config
from specstar.lib.config import load_config
from specstar.notifications import DesktopNotifier, notify_workflow_completed, notify_workflow_failed
from specstar.sessions.launcher import CommandLauncher
from specstar.sessions.pool import SessionPool
from specstar.workflow.bridge import WorkflowBridge, session_pool_spawner
from specstar.workflow.engine import WorkflowEngine
from specstar.workflow.sources import default_sources
from specstar.workflow.types import WorkflowContext, WorkflowExecutionError, WorkflowStatus

logger = logging.getLogger(__name__)


class WorkflowRunInput(BaseModel):
    """Parameters of a workflow run."""
    workflow_id: str
    cwd: str
    issue_id: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)


def build_engine(cwd: Path) -> tuple[WorkflowEngine, SessionPool]:
    """Wire an engine to a session pool that launches agents via agents.yaml."""
    config = load_config(cwd)
    pool = SessionPool(
        CommandLauncher(load_agents_config(cwd)),
        max_concurrent=config.max_concurrent_sessions,
    )
    pool.subscribe(DesktopNotifier())
    bridge = WorkflowBridge(session_pool_spawner(pool, config.default_model))
    engine = WorkflowEngine(bridge, default_sources(cwd, config.workflow_dirs))
    return engine, pool


@flow(name="specstar_workflow_run")
async def run_workflow(
    workflow_id: str,
    cwd: str,
    issue_id: str | None = None,
    variables: dict[str, str] | None = None,
) -> dict:
    """Discover, execute and wait for a workflow.

    Returns a summary dict with the handle id, final status and per-step
    status. A failed or aborted run raises WorkflowExecutionError so Prefect
    marks the flow run failed.
    """
    params = WorkflowRunInput(
        workflow_id=workflow_id, cwd=cwd, issue_id=issue_id, variables=variables or {}
    )
    engine, pool = build_engine(Path(params.cwd))

    try:
        definition = engine.get(params.workflow_id)
        context = WorkflowContext(
            cwd=params.cwd, issue_id=params.issue_id, variables=dict(params.variables)
        )
        handle = await engine.execute(definition, context)
        status = await handle.wait()
    finally:
        await pool.shutdown_all()

    summary = handle.summary()
    result = {
        "handle_id": summary.handle_id,
        "workflow_id": summary.workflow_id,
        "status": summary.status.value,
        "error": summary.error,
        "steps": {
            step_id: {
                "status": s.status.value,
                "started_at": s.started_at.isoformat() if s.started_at else None,
                "completed_at": s.completed_at.isoformat() if s.completed_at else None,
                "error": s.error,
            }
            for step_id, s in summary.steps.items()
        },
    }

    if status is not WorkflowStatus.COMPLETED:
        notify_workflow_failed(params.workflow_id, summary.error or status.value)
        failed_step = next(
            (sid for sid, s in summary.steps.items() if s.status is WorkflowStatus.FAILED), None
        )
        raise WorkflowExecutionError(
            params.workflow_id, failed_step, summary.error or status.value
        )

    notify_workflow_completed(params.workflow_id)
    logger.info(f"[WORKFLOW] {params.workflow_id} finished: {result['status']}")
    return result
