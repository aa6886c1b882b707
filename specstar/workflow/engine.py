"""Workflow engine: validation, wave scheduling and execution.

A workflow is a small DAG of steps. Execution groups the steps into waves
(Kahn's algorithm); waves run one after another and every step of a wave is
started together:

    wave 0: steps with no dependencies
    wave 1: steps whose dependencies are all in wave 0
    ...

A failing step lets its siblings in the same wave finish, then the run stops
and is marked failed. Abort is cooperative: it stops new steps from being
launched but never kills a step that is already running. A step that
finishes after abort still records its outcome in step_statuses, but no
further progress events are emitted.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Sequence

from specstar.lib.ids import WorkflowHandleId, generate_handle_id
from specstar.workflow.bridge import WorkflowBridge
from specstar.workflow.sources import WorkflowSource, discover_workflows
from specstar.workflow.types import (
    HandleSummary,
    ProgressEvent,
    StepCompleted,
    StepFailed,
    StepStarted,
    StepStatus,
    WorkflowAborted,
    WorkflowCompleted,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowFailed,
    WorkflowNotFound,
    WorkflowStatus,
    WorkflowStep,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)

CYCLE_ISSUE = "Circular dependency detected in step graph."


class _CycleDetected(Exception):
    pass


def _layer(steps: Sequence[WorkflowStep]) -> list[list[str]]:
    """Kahn layering over the given steps.

    Dependencies on ids outside `steps` are ignored, and only the first step
    with a given id takes part. Raises _CycleDetected if steps remain but no
    wave can be formed.
    """
    deps: dict[str, set[str]] = {}
    for step in steps:
        deps.setdefault(step.id, set(step.depends_on))
    for step_id in deps:
        deps[step_id] &= deps.keys()

    waves: list[list[str]] = []
    done: set[str] = set()
    while len(done) < len(deps):
        wave = [sid for sid, d in deps.items() if sid not in done and d <= done]
        if not wave:
            raise _CycleDetected()
        done.update(wave)
        waves.append(wave)
    return waves


def compute_waves(definition: WorkflowDefinition) -> list[list[str]]:
    """Group step ids into execution waves, in declaration order.

    Raises:
        WorkflowValidationError: If the step graph has a cycle
    """
    try:
        return _layer(definition.steps)
    except _CycleDetected:
        raise WorkflowValidationError(definition.id, [CYCLE_ISSUE]) from None


def validate_workflow(definition: WorkflowDefinition) -> None:
    """Check a definition before it is executed.

    Every problem is collected; nothing short-circuits.

    Raises:
        WorkflowValidationError: Listing every issue found
    """
    issues = []

    if not definition.id:
        issues.append("Workflow id must be non-empty.")
    if not definition.name:
        issues.append("Workflow name must be non-empty.")
    if not definition.steps:
        issues.append("Workflow must have at least one step.")

    seen: set[str] = set()
    for step in definition.steps:
        if not step.id:
            issues.append("Each step must have a non-empty id.")
        elif step.id in seen:
            issues.append(f'Duplicate step id: "{step.id}".')
        seen.add(step.id)

    for step in definition.steps:
        for dep in step.depends_on:
            if dep not in seen:
                issues.append(f'Step "{step.id}" depends on unknown step "{dep}".')

    try:
        _layer(definition.steps)
    except _CycleDetected:
        issues.append(CYCLE_ISSUE)

    if issues:
        raise WorkflowValidationError(definition.id, issues)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class WorkflowHandle:
    """A live run of one workflow definition."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        context: WorkflowContext,
        bridge: WorkflowBridge,
        waves: list[list[str]],
    ):
        self.id: WorkflowHandleId = generate_handle_id()
        self.definition = definition
        self.context = context
        self.bridge = bridge
        self.waves = waves
        self.error: str | None = None
        self._status = WorkflowStatus.RUNNING
        self._aborted = False
        self._steps = {s.id: StepStatus(step_id=s.id) for s in definition.steps}
        self._listeners: list[Callable[[ProgressEvent], None]] = []
        self._task: asyncio.Task | None = None

    @property
    def workflow_id(self) -> str:
        return self.definition.id

    @property
    def status(self) -> WorkflowStatus:
        return self._status

    @property
    def step_statuses(self) -> dict[str, StepStatus]:
        """Copy of the per-step status map."""
        return dict(self._steps)

    def on_progress(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        """Subscribe to progress events; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def abort(self) -> None:
        """Stop scheduling further steps. No-op once the run has finished."""
        if self._aborted or self._status in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED):
            return
        self._aborted = True
        self._status = WorkflowStatus.ABORTED
        logger.info(f"[WORKFLOW] {self.workflow_id} ({self.id}) aborted")
        self._emit(WorkflowAborted(self.definition.id))

    async def wait(self) -> WorkflowStatus:
        """Wait for the run to settle and return its final status.

        After abort this still waits for steps that were already running.
        """
        if self._task is not None:
            await self._task
        return self._status

    def summary(self) -> HandleSummary:
        return HandleSummary(
            handle_id=self.id,
            workflow_id=self.definition.id,
            status=self._status,
            steps=self.step_statuses,
            error=self.error,
        )

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"workflow-{self.id}")

    def _emit(self, event: ProgressEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.warning(
                    f"[WORKFLOW] progress subscriber failed on {event.type}", exc_info=True
                )

    def _update(self, step_id: str, **changes) -> None:
        self._steps[step_id] = replace(self._steps[step_id], **changes)

    async def _run(self) -> None:
        for index, wave in enumerate(self.waves):
            if self._aborted:
                return
            logger.debug(f"[WORKFLOW] {self.workflow_id}: wave {index} {wave}")

            results = await asyncio.gather(
                *(self._run_step(step_id) for step_id in wave),
                return_exceptions=True,
            )
            failures = [
                (step_id, r) for step_id, r in zip(wave, results) if isinstance(r, BaseException)
            ]
            if failures:
                if self._aborted:
                    return
                self._status = WorkflowStatus.FAILED
                self.error = _error_message(failures[0][1])
                logger.warning(f"[WORKFLOW] {self.workflow_id} failed at step {failures[0][0]}: {self.error}")
                self._emit(WorkflowFailed(self.definition.id, self.error))
                return

        if not self._aborted:
            self._status = WorkflowStatus.COMPLETED
            logger.info(f"[WORKFLOW] {self.workflow_id} ({self.id}) completed")
            self._emit(WorkflowCompleted(self.definition.id))

    async def _run_step(self, step_id: str) -> None:
        if self._aborted:
            return
        step = self.definition.step(step_id)

        self._update(step_id, status=WorkflowStatus.RUNNING, started_at=_now())
        logger.info(f"[WORKFLOW] {self.workflow_id}: step {step_id} started")
        self._emit(StepStarted(step_id))

        try:
            await self.bridge.execute_step(step, self.context)
        except Exception as e:
            message = _error_message(e)
            self._update(step_id, status=WorkflowStatus.FAILED, completed_at=_now(), error=message)
            logger.info(f"[WORKFLOW] {self.workflow_id}: step {step_id} failed: {message}")
            if not self._aborted:
                self._emit(StepFailed(step_id, message))
            raise

        self._update(step_id, status=WorkflowStatus.COMPLETED, completed_at=_now())
        logger.info(f"[WORKFLOW] {self.workflow_id}: step {step_id} completed")
        if not self._aborted:
            self._emit(StepCompleted(step_id))


class WorkflowEngine:
    """Discovers workflow definitions and runs them through a bridge."""

    def __init__(self, bridge: WorkflowBridge, sources: Sequence[WorkflowSource] = ()):
        self.bridge = bridge
        self.sources = list(sources)

    def register_source(self, source: WorkflowSource) -> None:
        self.sources.append(source)

    def discover(self) -> list[WorkflowDefinition]:
        return discover_workflows(self.sources)

    def get(self, workflow_id: str) -> WorkflowDefinition:
        for definition in self.discover():
            if definition.id == workflow_id:
                return definition
        raise WorkflowNotFound(workflow_id)

    async def execute(self, definition: WorkflowDefinition, context: WorkflowContext) -> WorkflowHandle:
        """Validate and start a run. Returns as soon as the run is scheduled.

        Raises:
            WorkflowValidationError: If the definition is malformed
        """
        validate_workflow(definition)
        waves = compute_waves(definition)

        handle = WorkflowHandle(definition, context, self.bridge, waves)
        logger.info(f"[WORKFLOW] Starting {definition.id} as {handle.id} ({len(waves)} waves)")
        handle.start()
        return handle
