"""Tests for specstar.workflow.engine module."""

import asyncio

import pytest

from specstar.workflow.engine import (
    CYCLE_ISSUE,
    WorkflowEngine,
    compute_waves,
    validate_workflow,
)
from specstar.workflow.sources import BuiltinSource
from specstar.workflow.types import (
    StepCompleted,
    StepFailed,
    StepStarted,
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


def step(step_id, *deps):
    return WorkflowStep(id=step_id, name=step_id.title(), prompt=f"do {step_id}", depends_on=deps)


def definition(*steps, wf_id="test-flow", name="Test Flow"):
    return WorkflowDefinition(id=wf_id, name=name, steps=tuple(steps))


class FakeBridge:
    """Bridge whose steps finish when the test says so."""

    def __init__(self, fail=(), block=()):
        self.fail = set(fail)
        self.block = set(block)
        self.gates = {sid: asyncio.Event() for sid in self.block}
        self.executed = []
        self.contexts = []

    async def execute_step(self, step, context):
        self.executed.append(step.id)
        self.contexts.append(context)
        if step.id in self.gates:
            await self.gates[step.id].wait()
        if step.id in self.fail:
            raise RuntimeError(f"{step.id} exploded")


CTX = WorkflowContext(cwd="/tmp/ws", issue_id="AUTH-142")


class TestComputeWaves:
    """Tests for compute_waves()."""

    def test_linear_chain(self):
        assert compute_waves(definition(step("a"), step("b", "a"), step("c", "b"))) == [["a"], ["b"], ["c"]]

    def test_diamond(self):
        d = definition(step("a"), step("b", "a"), step("c", "a"), step("d", "b", "c"))
        assert compute_waves(d) == [["a"], ["b", "c"], ["d"]]

    def test_independent_steps_share_first_wave(self):
        assert compute_waves(definition(step("x"), step("y"), step("z"))) == [["x", "y", "z"]]

    def test_declaration_order_within_wave(self):
        d = definition(step("late", "root"), step("root"), step("early", "root"))
        assert compute_waves(d) == [["root"], ["late", "early"]]

    def test_every_step_exactly_once(self):
        d = definition(step("a"), step("b", "a"), step("c"), step("d", "b", "c"), step("e", "a"))
        flat = [sid for wave in compute_waves(d) for sid in wave]
        assert sorted(flat) == ["a", "b", "c", "d", "e"]

    def test_dependencies_in_earlier_waves(self):
        steps = [step("a"), step("b", "a"), step("c", "a", "b"), step("d", "c")]
        waves = compute_waves(definition(*steps))
        wave_of = {sid: i for i, wave in enumerate(waves) for sid in wave}
        for s in steps:
            for dep in s.depends_on:
                assert wave_of[dep] < wave_of[s.id]

    def test_cycle(self):
        with pytest.raises(WorkflowValidationError) as exc:
            compute_waves(definition(step("a", "b"), step("b", "a")))
        assert exc.value.issues == [CYCLE_ISSUE]


class TestValidateWorkflow:
    """Tests for validate_workflow()."""

    def test_valid(self):
        validate_workflow(definition(step("a"), step("b", "a")))

    def test_builtins_are_valid(self):
        for d in BuiltinSource().list():
            validate_workflow(d)

    def test_collects_every_issue(self):
        d = definition(step("a", "ghost"), step("a"), step("b", "c"), step("c", "b"), wf_id="", name="")
        with pytest.raises(WorkflowValidationError) as exc:
            validate_workflow(d)
        issues = exc.value.issues
        assert "Workflow id must be non-empty." in issues
        assert "Workflow name must be non-empty." in issues
        assert 'Duplicate step id: "a".' in issues
        assert 'Step "a" depends on unknown step "ghost".' in issues
        assert CYCLE_ISSUE in issues

    def test_no_steps(self):
        with pytest.raises(WorkflowValidationError, match="at least one step"):
            validate_workflow(definition())

    def test_self_dependency_is_cycle(self):
        with pytest.raises(WorkflowValidationError) as exc:
            validate_workflow(definition(step("a", "a")))
        assert exc.value.issues == [CYCLE_ISSUE]


class TestWorkflowHandle:
    """Tests for running a workflow through WorkflowEngine.execute()."""

    @pytest.mark.asyncio
    async def test_runs_to_completion(self):
        bridge = FakeBridge()
        engine = WorkflowEngine(bridge)
        handle = await engine.execute(definition(step("a"), step("b", "a")), CTX)
        events = []
        handle.on_progress(events.append)

        assert await handle.wait() == WorkflowStatus.COMPLETED
        assert bridge.executed == ["a", "b"]
        assert bridge.contexts[0] is CTX
        assert events == [StepStarted("a"), StepCompleted("a"), StepStarted("b"), StepCompleted("b"),
                          WorkflowCompleted("test-flow")]
        statuses = handle.step_statuses
        assert all(s.status is WorkflowStatus.COMPLETED for s in statuses.values())
        assert statuses["a"].started_at <= statuses["a"].completed_at

    @pytest.mark.asyncio
    async def test_handle_id_format(self):
        handle = await WorkflowEngine(FakeBridge()).execute(definition(step("a")), CTX)
        assert handle.id.startswith("wh-")
        assert handle.workflow_id == "test-flow"
        await handle.wait()

    @pytest.mark.asyncio
    async def test_failure_lets_siblings_finish_and_stops(self):
        bridge = FakeBridge(fail={"b"})
        engine = WorkflowEngine(bridge)
        d = definition(step("a"), step("b", "a"), step("c", "a"), step("d", "b", "c"))
        handle = await engine.execute(d, CTX)
        events = []
        handle.on_progress(events.append)

        assert await handle.wait() == WorkflowStatus.FAILED
        assert sorted(bridge.executed) == ["a", "b", "c"]
        statuses = handle.step_statuses
        assert statuses["b"].status is WorkflowStatus.FAILED
        assert statuses["b"].error == "b exploded"
        assert statuses["c"].status is WorkflowStatus.COMPLETED
        assert statuses["d"].status is WorkflowStatus.PENDING
        assert handle.error == "b exploded"
        assert StepFailed("b", "b exploded") in events
        assert events[-1] == WorkflowFailed("test-flow", "b exploded")

    @pytest.mark.asyncio
    async def test_validation_error_before_start(self):
        bridge = FakeBridge()
        with pytest.raises(WorkflowValidationError):
            await WorkflowEngine(bridge).execute(definition(step("a", "a")), CTX)
        assert bridge.executed == []

    @pytest.mark.asyncio
    async def test_abort_stops_scheduling(self):
        bridge = FakeBridge(block={"a"})
        handle = await WorkflowEngine(bridge).execute(definition(step("a"), step("b", "a")), CTX)
        events = []
        handle.on_progress(events.append)
        while not bridge.executed:
            await asyncio.sleep(0)

        handle.abort()
        handle.abort()  # idempotent
        assert handle.status is WorkflowStatus.ABORTED

        bridge.gates["a"].set()
        assert await handle.wait() == WorkflowStatus.ABORTED
        assert bridge.executed == ["a"]
        # The running step still records its outcome
        assert handle.step_statuses["a"].status is WorkflowStatus.COMPLETED
        assert handle.step_statuses["b"].status is WorkflowStatus.PENDING
        assert events == [StepStarted("a"), WorkflowAborted("test-flow")]

    @pytest.mark.asyncio
    async def test_abort_after_completion_is_noop(self):
        handle = await WorkflowEngine(FakeBridge()).execute(definition(step("a")), CTX)
        await handle.wait()
        handle.abort()
        assert handle.status is WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_subscriber_errors_are_contained(self, caplog):
        handle = await WorkflowEngine(FakeBridge()).execute(definition(step("a")), CTX)
        seen = []

        def broken(event):
            raise ValueError("bad subscriber")

        handle.on_progress(broken)
        handle.on_progress(seen.append)
        assert await handle.wait() == WorkflowStatus.COMPLETED
        assert len(seen) == 3
        assert "progress subscriber failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        handle = await WorkflowEngine(FakeBridge()).execute(definition(step("a")), CTX)
        seen = []
        unsubscribe = handle.on_progress(seen.append)
        unsubscribe()
        await handle.wait()
        assert seen == []

    @pytest.mark.asyncio
    async def test_summary(self):
        handle = await WorkflowEngine(FakeBridge(fail={"a"})).execute(definition(step("a")), CTX)
        await handle.wait()
        summary = handle.summary()
        assert summary.handle_id == handle.id
        assert summary.status is WorkflowStatus.FAILED
        assert summary.steps["a"].error == "a exploded"


class TestEngineDiscovery:
    def test_get_builtin(self):
        engine = WorkflowEngine(FakeBridge(), [BuiltinSource()])
        assert engine.get("draft-spec").name == "Draft Spec"

    def test_get_unknown(self):
        with pytest.raises(WorkflowNotFound, match="nope"):
            WorkflowEngine(FakeBridge(), [BuiltinSource()]).get("nope")

    def test_register_source(self):
        engine = WorkflowEngine(FakeBridge())
        assert engine.discover() == []
        engine.register_source(BuiltinSource([definition(step("a"))]))
        assert [d.id for d in engine.discover()] == ["test-flow"]
