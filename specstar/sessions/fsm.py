"""Status state machines using the transitions library.

Two small machines share one shape:
- WorkerStatus: lifecycle of a spawned agent session
- SpecStatus: review lifecycle of a spec document

The transition tables are the single source of truth. The pure helpers
(is_valid_*_transition / validate_*_transition) read the same tables the
Machine-backed FSM classes are built from, so the two can never disagree.

Usage:
    from specstar.sessions.fsm import WorkerFSM, validate_worker_transition

    validate_worker_transition("working", "approval")   # ok
    validate_worker_transition("shutdown", "idle")      # raises InvalidTransition

    fsm = WorkerFSM("s-abc12345")
    fsm.move_to("idle")
"""

import logging
from enum import Enum
from typing import Callable

from transitions import Machine, MachineError

from specstar.lib.types import SpecStatus, WorkerStatus

logger = logging.getLogger(__name__)

WORKER_MACHINE = "WorkerStatus"
SPEC_MACHINE = "SpecStatus"

WORKER_STATES = [s.value for s in WorkerStatus]
SPEC_STATES = [s.value for s in SpecStatus]

# Transitions defined as (trigger, source, dest).
# shutdown is terminal: it has no outgoing transitions.
WORKER_TRANSITIONS = [
    {"trigger": "ready", "source": "starting", "dest": "idle"},
    {"trigger": "fail", "source": "starting", "dest": "error"},
    {"trigger": "shutdown", "source": "starting", "dest": "shutdown"},

    {"trigger": "start_work", "source": "idle", "dest": "working"},
    {"trigger": "shutdown", "source": "idle", "dest": "shutdown"},

    {"trigger": "finish_turn", "source": "working", "dest": "idle"},
    {"trigger": "request_approval", "source": "working", "dest": "approval"},
    {"trigger": "fail", "source": "working", "dest": "error"},
    {"trigger": "shutdown", "source": "working", "dest": "shutdown"},

    {"trigger": "resolve_approval", "source": "approval", "dest": "working"},
    {"trigger": "fail", "source": "approval", "dest": "error"},
    {"trigger": "shutdown", "source": "approval", "dest": "shutdown"},

    {"trigger": "recover", "source": "error", "dest": "idle"},
    {"trigger": "shutdown", "source": "error", "dest": "shutdown"},
]

# approved and denied both return to draft; there is no terminal state.
SPEC_TRANSITIONS = [
    {"trigger": "submit", "source": "draft", "dest": "pending"},
    {"trigger": "approve", "source": "pending", "dest": "approved"},
    {"trigger": "deny", "source": "pending", "dest": "denied"},
    {"trigger": "revise", "source": "approved", "dest": "draft"},
    {"trigger": "revise", "source": "denied", "dest": "draft"},
]


def _build_trigger_lookup(transitions: list[dict]) -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in transitions:
        lookup.setdefault((t["source"], t["dest"]), t["trigger"])
    return lookup


WORKER_TRIGGER_FOR = _build_trigger_lookup(WORKER_TRANSITIONS)
SPEC_TRIGGER_FOR = _build_trigger_lookup(SPEC_TRANSITIONS)


class InvalidTransition(Exception):
    """Raised when a state machine is asked to make an illegal move."""

    def __init__(self, from_state: str, to_state: str, machine: str):
        self.from_state = from_state
        self.to_state = to_state
        self.machine = machine
        super().__init__(f"Invalid {machine} transition: {from_state} -> {to_state}")


def _value(state: Enum | str) -> str:
    return state.value if isinstance(state, Enum) else str(state)


def allowed_worker_targets(from_state: WorkerStatus | str) -> list[str]:
    """Destinations reachable from a worker status, in table order."""
    source = _value(from_state)
    return [dest for (src, dest) in WORKER_TRIGGER_FOR if src == source]


def is_valid_worker_transition(from_state: WorkerStatus | str, to_state: WorkerStatus | str) -> bool:
    """Check a WorkerStatus transition without raising."""
    return (_value(from_state), _value(to_state)) in WORKER_TRIGGER_FOR


def validate_worker_transition(from_state: WorkerStatus | str, to_state: WorkerStatus | str) -> None:
    """Raise InvalidTransition unless from_state -> to_state is allowed."""
    if not is_valid_worker_transition(from_state, to_state):
        raise InvalidTransition(_value(from_state), _value(to_state), WORKER_MACHINE)


def is_valid_spec_transition(from_state: SpecStatus | str, to_state: SpecStatus | str) -> bool:
    """Check a SpecStatus transition without raising."""
    return (_value(from_state), _value(to_state)) in SPEC_TRIGGER_FOR


def validate_spec_transition(from_state: SpecStatus | str, to_state: SpecStatus | str) -> None:
    """Raise InvalidTransition unless from_state -> to_state is allowed."""
    if not is_valid_spec_transition(from_state, to_state):
        raise InvalidTransition(_value(from_state), _value(to_state), SPEC_MACHINE)


class StatusFSM:
    """Machine-backed status tracker for one object.

    Subclasses provide the machine name, state list and transition table.
    Transitions can be requested either by trigger name (``fsm.shutdown()``)
    or by destination (``fsm.move_to("shutdown")``).
    """

    MACHINE_NAME = ""
    STATES: list[str] = []
    TRANSITIONS: list[dict] = []
    TRIGGER_FOR: dict[tuple[str, str], str] = {}

    def __init__(
        self,
        subject_id: str,
        initial: Enum | str,
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        """
        Args:
            subject_id: ID of the object being tracked (for logging)
            initial: Starting state
            on_transition: Optional callback(from_state, to_state, trigger)
        """
        self.subject_id = subject_id
        self.on_transition = on_transition

        initial_value = _value(initial)
        if initial_value not in self.STATES:
            raise ValueError(f"Unknown {self.MACHINE_NAME} state '{initial_value}'")

        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=initial_value,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        """Callback after any state transition."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.subject_id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def move_to(self, to_state: Enum | str) -> None:
        """Transition to the given destination state.

        Raises:
            InvalidTransition: If the move is not in the transition table
        """
        current = self.state
        dest = _value(to_state)
        trigger = self.TRIGGER_FOR.get((current, dest))
        if trigger is None:
            logger.warning(
                f"[FSM] {self.subject_id}: rejected {self.MACHINE_NAME} transition {current} -> {dest}"
            )
            raise InvalidTransition(current, dest, self.MACHINE_NAME)

        try:
            getattr(self, trigger)()
        except MachineError as e:
            raise InvalidTransition(current, dest, self.MACHINE_NAME) from e

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available in current state."""
        return self.machine.get_triggers(self.state)


class WorkerFSM(StatusFSM):
    """State machine for one worker session's status."""

    MACHINE_NAME = WORKER_MACHINE
    STATES = WORKER_STATES
    TRANSITIONS = WORKER_TRANSITIONS
    TRIGGER_FOR = WORKER_TRIGGER_FOR

    def __init__(
        self,
        session_id: str,
        initial: WorkerStatus | str = WorkerStatus.STARTING,
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        super().__init__(session_id, initial, on_transition)

    @property
    def status(self) -> WorkerStatus:
        return WorkerStatus(self.state)

    @property
    def is_terminal(self) -> bool:
        return not allowed_worker_targets(self.state)


class SpecFSM(StatusFSM):
    """State machine for one spec document's review status."""

    MACHINE_NAME = SPEC_MACHINE
    STATES = SPEC_STATES
    TRANSITIONS = SPEC_TRANSITIONS
    TRIGGER_FOR = SPEC_TRIGGER_FOR

    def __init__(
        self,
        spec_id: str,
        initial: SpecStatus | str = SpecStatus.DRAFT,
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        super().__init__(spec_id, initial, on_transition)

    @property
    def status(self) -> SpecStatus:
        return SpecStatus(self.state)
