"""Workflow data model, progress events and errors."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from specstar.lib.ids import WorkflowHandleId, WorkflowId


class WorkflowStatus(Enum):
    PENDING = "pending"  # Steps only: not launched yet
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class WorkflowStep:
    """One step of a workflow: a prompt handed to a fresh agent session."""
    id: str
    name: str
    prompt: str  # May contain {{issueId}} / {{variable}} placeholders
    depends_on: tuple[str, ...] = ()
    model: str | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    id: WorkflowId
    name: str
    steps: tuple[WorkflowStep, ...]
    description: str = ""
    source_path: str = ""  # File path, or builtin://<id>

    def step(self, step_id: str) -> WorkflowStep:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise KeyError(step_id)


@dataclass(frozen=True)
class WorkflowContext:
    """Values available to step prompts."""
    cwd: str
    issue_id: str | None = None
    variables: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StepStatus:
    step_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


# --- Progress events ---

@dataclass(frozen=True)
class StepStarted:
    step_id: str
    type: str = field(default="step_started", init=False)


@dataclass(frozen=True)
class StepCompleted:
    step_id: str
    type: str = field(default="step_completed", init=False)


@dataclass(frozen=True)
class StepFailed:
    step_id: str
    error: str
    type: str = field(default="step_failed", init=False)


@dataclass(frozen=True)
class WorkflowCompleted:
    workflow_id: WorkflowId
    type: str = field(default="workflow_completed", init=False)


@dataclass(frozen=True)
class WorkflowFailed:
    workflow_id: WorkflowId
    error: str
    type: str = field(default="workflow_failed", init=False)


@dataclass(frozen=True)
class WorkflowAborted:
    workflow_id: WorkflowId
    type: str = field(default="workflow_aborted", init=False)


ProgressEvent = Union[
    StepStarted, StepCompleted, StepFailed,
    WorkflowCompleted, WorkflowFailed, WorkflowAborted,
]


# --- Errors ---

class WorkflowError(Exception):
    """Base class for workflow errors."""


class WorkflowNotFound(WorkflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f'Workflow "{workflow_id}" not found')


class WorkflowValidationError(WorkflowError):
    """A workflow definition is malformed. Lists every problem found."""

    def __init__(self, workflow_id: str, issues: list[str]):
        self.workflow_id = workflow_id
        self.issues = list(issues)
        super().__init__(f'Workflow "{workflow_id}" validation failed: {" ".join(self.issues)}')


class WorkflowExecutionError(WorkflowError):
    def __init__(self, workflow_id: str, step_id: str | None, cause: str):
        self.workflow_id = workflow_id
        self.step_id = step_id
        self.cause = cause
        where = f' at step "{step_id}"' if step_id else ""
        super().__init__(f'Workflow "{workflow_id}" failed{where}: {cause}')


@dataclass(frozen=True)
class HandleSummary:
    """Final state of a workflow run."""
    handle_id: WorkflowHandleId
    workflow_id: WorkflowId
    status: WorkflowStatus
    steps: dict[str, StepStatus]
    error: str | None = None
