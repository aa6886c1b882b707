"""Tests for specstar.sessions.fsm module."""

import pytest

from specstar.lib.types import SpecStatus, WorkerStatus
from specstar.sessions.fsm import (
    InvalidTransition,
    SpecFSM,
    WorkerFSM,
    allowed_worker_targets,
    is_valid_spec_transition,
    is_valid_worker_transition,
    validate_spec_transition,
    validate_worker_transition,
)


class TestWorkerTransitionTable:
    """Tests for the pure worker transition helpers."""

    @pytest.mark.parametrize("src,dest", [
        ("starting", "idle"),
        ("starting", "error"),
        ("idle", "working"),
        ("working", "approval"),
        ("approval", "working"),
        ("working", "idle"),
        ("error", "idle"),
        ("working", "shutdown"),
    ])
    def test_valid_transitions(self, src, dest):
        assert is_valid_worker_transition(src, dest)
        validate_worker_transition(src, dest)

    @pytest.mark.parametrize("src,dest", [
        ("shutdown", "idle"),
        ("shutdown", "working"),
        ("idle", "approval"),
        ("starting", "working"),
        ("error", "working"),
        ("idle", "idle"),
    ])
    def test_invalid_transitions(self, src, dest):
        assert not is_valid_worker_transition(src, dest)
        with pytest.raises(InvalidTransition):
            validate_worker_transition(src, dest)

    def test_accepts_enums(self):
        assert is_valid_worker_transition(WorkerStatus.IDLE, WorkerStatus.WORKING)

    def test_shutdown_is_terminal(self):
        assert allowed_worker_targets("shutdown") == []

    def test_every_non_terminal_state_can_shut_down(self):
        for status in WorkerStatus:
            if status is WorkerStatus.SHUTDOWN:
                continue
            assert "shutdown" in allowed_worker_targets(status)

    def test_error_message(self):
        with pytest.raises(InvalidTransition, match="shutdown -> idle") as exc:
            validate_worker_transition("shutdown", "idle")
        assert exc.value.machine == "WorkerStatus"
        assert exc.value.from_state == "shutdown"


class TestSpecTransitionTable:
    def test_review_cycle(self):
        assert is_valid_spec_transition("draft", "pending")
        assert is_valid_spec_transition("pending", "approved")
        assert is_valid_spec_transition("pending", "denied")
        assert is_valid_spec_transition("approved", "draft")
        assert is_valid_spec_transition("denied", "draft")

    def test_cannot_skip_review(self):
        assert not is_valid_spec_transition("draft", "approved")
        with pytest.raises(InvalidTransition, match="SpecStatus"):
            validate_spec_transition(SpecStatus.DRAFT, SpecStatus.APPROVED)


class TestWorkerFSM:
    """Tests for the Machine-backed WorkerFSM."""

    @pytest.fixture
    def fsm(self):
        return WorkerFSM("s-test0001")

    def test_initial_state(self, fsm):
        assert fsm.status == WorkerStatus.STARTING
        assert not fsm.is_terminal

    def test_move_to(self, fsm):
        fsm.move_to("idle")
        fsm.move_to(WorkerStatus.WORKING)
        assert fsm.status == WorkerStatus.WORKING

    def test_trigger_by_name(self, fsm):
        fsm.ready()
        assert fsm.state == "idle"

    def test_invalid_move_leaves_state(self, fsm):
        with pytest.raises(InvalidTransition):
            fsm.move_to("approval")
        assert fsm.status == WorkerStatus.STARTING

    def test_shutdown_is_terminal(self, fsm):
        fsm.move_to("shutdown")
        assert fsm.is_terminal
        with pytest.raises(InvalidTransition):
            fsm.move_to("idle")

    def test_callback_receives_transition(self):
        seen = []
        fsm = WorkerFSM("s-test0002", on_transition=lambda a, b, t: seen.append((a, b, t)))
        fsm.move_to("idle")
        assert seen == [("starting", "idle", "ready")]

    def test_available_triggers(self, fsm):
        fsm.move_to("idle")
        assert set(fsm.get_available_triggers()) == {"start_work", "shutdown"}
        assert fsm.can("start_work")
        assert not fsm.can("request_approval")

    def test_unknown_initial_state(self):
        with pytest.raises(ValueError, match="Unknown"):
            WorkerFSM("s-test0003", initial="bogus")


class TestSpecFSM:
    def test_full_cycle(self):
        fsm = SpecFSM("spec-1")
        fsm.move_to("pending")
        fsm.move_to("denied")
        fsm.move_to("draft")
        assert fsm.status == SpecStatus.DRAFT
