"""
Bridge between workflow steps and agent sessions.

Turns a WorkflowStep plus WorkflowContext into a spawn request: the prompt
template is interpolated and the session is named after the step. The
actual spawning is delegated to a spawner callable, normally one backed by
the session pool (see session_pool_spawner).
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

from specstar.sessions.pool import SessionOptions, SessionPool
from specstar.workflow.types import WorkflowContext, WorkflowStep

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\{\{(\w+)\}\}')


@dataclass(frozen=True)
class SpawnRequest:
    cwd: str
    name: str
    initial_prompt: str
    model: str | None = None


Spawner = Callable[[SpawnRequest], Awaitable[None]]


def interpolate_prompt(template: str, context: WorkflowContext) -> str:
    """Replace {{key}} placeholders from the workflow context.

    {{issueId}} takes the context's issue id; any other key is looked up in
    context.variables. Placeholders with no value are left as-is so the agent
    can still see what was expected.
    """
    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key == "issueId" and context.issue_id:
            return context.issue_id
        if key in context.variables:
            return str(context.variables[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


def step_session_name(step: WorkflowStep) -> str:
    return f"workflow:{step.name}"


class WorkflowBridge:
    """Executes a single workflow step by spawning a session for it."""

    def __init__(self, spawner: Spawner):
        self.spawner = spawner

    async def execute_step(self, step: WorkflowStep, context: WorkflowContext) -> None:
        prompt = interpolate_prompt(step.prompt, context)
        unresolved = PLACEHOLDER_PATTERN.findall(prompt)
        if unresolved:
            logger.debug(f"Step {step.id}: unresolved placeholders {unresolved}")

        await self.spawner(SpawnRequest(
            cwd=context.cwd,
            name=step_session_name(step),
            initial_prompt=prompt,
            model=step.model,
        ))


def session_pool_spawner(pool: SessionPool, default_model: str | None = None) -> Spawner:
    """Spawner that runs each step in a pool session and waits for it to exit.

    A session that ends in the error state fails the step.
    """
    async def spawn(request: SpawnRequest) -> None:
        session = await pool.spawn(SessionOptions(
            cwd=request.cwd,
            name=request.name,
            initial_prompt=request.initial_prompt,
            model=request.model or default_model,
        ), track_exit=True)
        await pool.wait_for_exit(session.id)

    return spawn
