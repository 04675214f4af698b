"""
Tests for the workflow orchestrator.

Tests cover:
- Condition-driven skips and the gating-before-patch rule
- Event stream ordering
- Pause and resume, skip, retry
- Manual approval suspension
- Reset semantics and caller errors
"""

import asyncio

import pytest

from conftest import GatedOperation, failing, reporting, wait_until
from laneflow.config.settings import OrchestratorConfig
from laneflow.core.conditions import (
    ExternalHealthOk,
    ManualApproval,
    PreviousStepSucceeded,
    ScoreAtLeast,
)
from laneflow.core.context import ContextPatch, DeploymentHealth, DeploymentRecord
from laneflow.core.errors import (
    InvalidResumeError,
    RunStateError,
    TemplateNotFoundError,
    TemplateValidationError,
)
from laneflow.core.events import (
    LogLevel,
    LogLine,
    RunFinished,
    RunStateChanged,
    StepStatusChanged,
)
from laneflow.core.executor import OperationOutcome
from laneflow.core.state_machine import RunState
from laneflow.core.steps import StepKind, StepStatus
from laneflow.core.templates import RollbackStrategy, StepSpec, WorkflowTemplate


def gated_template() -> WorkflowTemplate:
    return WorkflowTemplate(
        "Gated",
        (
            StepSpec(StepKind.INIT),
            StepSpec(StepKind.TEST, (ScoreAtLeast(70),)),
            StepSpec(StepKind.COMMIT, (PreviousStepSucceeded("test"),)),
        ),
        rollback_strategy=RollbackStrategy.CHECKPOINT,
    )


def linear_template() -> WorkflowTemplate:
    return WorkflowTemplate(
        "Linear",
        (
            StepSpec(StepKind.INIT),
            StepSpec(StepKind.GENERATE),
            StepSpec(StepKind.LINT),
            StepSpec(StepKind.NOTIFY),
        ),
    )


def approval_template() -> WorkflowTemplate:
    return WorkflowTemplate(
        "Ship It",
        (
            StepSpec(StepKind.INIT),
            StepSpec(StepKind.STAGE),
            StepSpec(StepKind.PRODUCTION, (ManualApproval(), ExternalHealthOk(300))),
            StepSpec(StepKind.NOTIFY),
        ),
        rollback_strategy=RollbackStrategy.FULL,
    )


class TestScenarios:
    @pytest.mark.asyncio
    async def test_empty_context_skips_gated_steps(self, orchestrator):
        state = await orchestrator.start_run(gated_template())

        assert state is RunState.COMPLETED
        statuses = orchestrator.run.statuses()
        assert statuses == {
            "init": StepStatus.COMPLETED,
            "test": StepStatus.SKIPPED,
            "commit": StepStatus.SKIPPED,
        }
        assert orchestrator.run.cursor is None

    @pytest.mark.asyncio
    async def test_step_cannot_satisfy_its_own_condition(self, orchestrator_factory):
        """A step's own patch never feeds its own gate.

        ``test`` reports the review score it is gated on, but conditions only
        see facts present before the step runs, so ``test`` is skipped and
        ``commit`` follows it. Reading the example as "all three complete"
        would need the patch applied before gating; that run is the one in
        `test_score_present_before_test_runs_everything`, where the score is
        already in the context.
        """
        orchestrator = orchestrator_factory(
            {StepKind.TEST: reporting(ContextPatch(review_score=85, all_tests_passed=True))}
        )

        await orchestrator.start_run(gated_template())

        assert orchestrator.run.status_of("test") is StepStatus.SKIPPED
        assert orchestrator.run.status_of("commit") is StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_score_present_before_test_runs_everything(self, orchestrator_factory):
        orchestrator = orchestrator_factory(
            {StepKind.TEST: reporting(ContextPatch(all_tests_passed=True))}
        )

        state = await orchestrator.start_run(gated_template(), ContextPatch(review_score=85))

        assert state is RunState.COMPLETED
        assert set(orchestrator.run.statuses().values()) == {StepStatus.COMPLETED}
        assert orchestrator.run.context.all_tests_passed is True

    @pytest.mark.asyncio
    async def test_review_score_flows_into_later_gate(self, orchestrator_factory):
        orchestrator = orchestrator_factory(
            {StepKind.REVIEW: reporting(ContextPatch(review_score=91))}
        )
        template = WorkflowTemplate(
            "Reviewed",
            (StepSpec(StepKind.REVIEW), StepSpec(StepKind.TEST, (ScoreAtLeast(80),))),
        )

        await orchestrator.start_run(template)

        assert orchestrator.run.status_of("test") is StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_builtin_by_name(self, orchestrator):
        state = await orchestrator.start_run("Quick Fix", ContextPatch(branch="feature/x"))
        assert state is RunState.COMPLETED
        assert orchestrator.run.template.key == "quick_fix"
        assert len(orchestrator.run.history) == 5


class TestEvents:
    @pytest.mark.asyncio
    async def test_event_order(self, orchestrator, recorded_events):
        await orchestrator.start_run(gated_template())

        steps = [
            (e.step_id, e.status) for e in recorded_events if isinstance(e, StepStatusChanged)
        ]
        assert steps == [
            ("init", StepStatus.RUNNING),
            ("init", StepStatus.COMPLETED),
            ("test", StepStatus.SKIPPED),
            ("commit", StepStatus.SKIPPED),
        ]
        states = [e.current for e in recorded_events if isinstance(e, RunStateChanged)]
        assert states == [RunState.RUNNING, RunState.COMPLETED]

        finished = recorded_events[-1]
        assert isinstance(finished, RunFinished)
        assert (finished.completed, finished.skipped, finished.failed) == (1, 2, 0)

    @pytest.mark.asyncio
    async def test_skip_logged_as_warning(self, orchestrator, recorded_events):
        await orchestrator.start_run(gated_template())

        warnings = [
            e.message
            for e in recorded_events
            if isinstance(e, LogLine) and e.level is LogLevel.WARNING
        ]
        assert any("skipping" in message for message in warnings)

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_run(self, orchestrator):
        def broken(event):
            raise RuntimeError("renderer crashed")

        orchestrator.subscribe(broken)
        assert await orchestrator.start_run(linear_template()) is RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_unsubscribe(self, orchestrator):
        seen = []
        unsubscribe = orchestrator.subscribe(seen.append, LogLine)
        unsubscribe()
        await orchestrator.start_run(linear_template())
        assert seen == []

    @pytest.mark.asyncio
    async def test_log_buffer_is_bounded(self, orchestrator_factory):
        orchestrator = orchestrator_factory(config=OrchestratorConfig(log_buffer_size=3))
        await orchestrator.start_run(linear_template())

        assert len(orchestrator.run.logs) == 3
        assert orchestrator.run.logs[-1].message == "Workflow completed successfully!"

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, orchestrator):
        cursors = []
        orchestrator.subscribe(
            lambda e: cursors.append(orchestrator.run.cursor), StepStatusChanged
        )

        await orchestrator.start_run("full_deployment", ContextPatch(branch="feature/x"))
        while orchestrator.state is RunState.AWAITING_APPROVAL:
            await orchestrator.approve_waiting_step()

        seen = [c for c in cursors if c is not None]
        assert seen == sorted(seen)
        assert orchestrator.state is RunState.COMPLETED


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_is_honored_before_next_step(self, orchestrator_factory):
        gate = GatedOperation()
        orchestrator = orchestrator_factory({StepKind.GENERATE: gate})

        task = asyncio.create_task(orchestrator.start_run(linear_template()))
        await gate.started.wait()
        orchestrator.pause()
        gate.release.set()

        await wait_until(lambda: orchestrator.run.status_of("generate") is StepStatus.COMPLETED)
        for _ in range(10):
            await asyncio.sleep(0)

        assert orchestrator.state is RunState.PAUSED
        assert orchestrator.run.status_of("lint") is StepStatus.PENDING
        assert not task.done()

        orchestrator.resume()
        assert await task is RunState.COMPLETED
        assert gate.calls == 1

    @pytest.mark.asyncio
    async def test_pause_twice_is_harmless(self, orchestrator_factory):
        gate = GatedOperation()
        orchestrator = orchestrator_factory({StepKind.INIT: gate})

        task = asyncio.create_task(orchestrator.start_run(linear_template()))
        await gate.started.wait()
        orchestrator.pause()
        orchestrator.pause()
        orchestrator.resume()
        orchestrator.resume()
        gate.release.set()

        assert await task is RunState.COMPLETED

    def test_pause_when_idle_is_rejected(self, orchestrator):
        with pytest.raises(RunStateError):
            orchestrator.pause()

    def test_resume_when_idle_is_rejected(self, orchestrator):
        with pytest.raises(InvalidResumeError):
            orchestrator.resume()
        assert orchestrator.state is RunState.IDLE


class TestSkipCurrentStep:
    @pytest.mark.asyncio
    async def test_skip_while_paused_bypasses_step(self, orchestrator_factory):
        init_gate = GatedOperation()
        generate = GatedOperation()
        orchestrator = orchestrator_factory({StepKind.INIT: init_gate, StepKind.GENERATE: generate})

        task = asyncio.create_task(orchestrator.start_run(linear_template()))
        await init_gate.started.wait()
        orchestrator.pause()
        init_gate.release.set()
        await wait_until(lambda: orchestrator.run.cursor == 1)

        assert orchestrator.skip_current_step() == "generate"
        assert orchestrator.run.cursor == 2
        orchestrator.resume()

        assert await task is RunState.COMPLETED
        assert orchestrator.run.status_of("generate") is StepStatus.SKIPPED
        assert generate.calls == 0

    @pytest.mark.asyncio
    async def test_skip_in_flight_discards_result(self, orchestrator_factory):
        gate = GatedOperation(OperationOutcome(True, "late output", ContextPatch(analyzed=True)))
        orchestrator = orchestrator_factory({StepKind.ANALYZE: gate})
        template = WorkflowTemplate(
            "Analyze", (StepSpec(StepKind.ANALYZE), StepSpec(StepKind.NOTIFY))
        )

        task = asyncio.create_task(orchestrator.start_run(template))
        await gate.started.wait()
        orchestrator.skip_current_step()
        assert orchestrator.run.status_of("analyze") is StepStatus.SKIPPED
        gate.release.set()

        assert await task is RunState.COMPLETED
        assert orchestrator.run.status_of("analyze") is StepStatus.SKIPPED
        assert orchestrator.run.context.analyzed is False
        assert [e.step_id for e in orchestrator.run.history] == ["notify"]

    @pytest.mark.asyncio
    async def test_skip_last_step_while_paused(self, orchestrator_factory):
        init_gate = GatedOperation()
        lint = GatedOperation()
        orchestrator = orchestrator_factory({StepKind.INIT: init_gate, StepKind.LINT: lint})
        template = WorkflowTemplate("Short", (StepSpec(StepKind.INIT), StepSpec(StepKind.LINT)))

        task = asyncio.create_task(orchestrator.start_run(template))
        await init_gate.started.wait()
        orchestrator.pause()
        init_gate.release.set()
        await wait_until(lambda: orchestrator.run.cursor == 1)

        assert orchestrator.skip_current_step() == "lint"
        with pytest.raises(RunStateError):
            orchestrator.skip_current_step()
        orchestrator.resume()

        assert await task is RunState.COMPLETED
        assert orchestrator.run.status_of("lint") is StepStatus.SKIPPED
        assert orchestrator.run.cursor is None
        assert lint.calls == 0

    def test_skip_when_idle_is_rejected(self, orchestrator):
        with pytest.raises(RunStateError):
            orchestrator.skip_current_step()


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_resumes_at_failed_step(self, orchestrator_factory):
        attempts = []

        async def flaky(kind, context):
            attempts.append(kind)
            passed = len(attempts) > 1
            return OperationOutcome(True, "run", ContextPatch(all_tests_passed=passed))

        orchestrator = orchestrator_factory({StepKind.TEST: flaky})

        state = await orchestrator.start_run("quick_fix")
        assert state is RunState.FAILED
        assert orchestrator.run.status_of("test") is StepStatus.FAILED
        assert orchestrator.run.step_states["test"].error == "Tests failed"
        assert orchestrator.run.status_of("commit") is StepStatus.PENDING

        state = await orchestrator.retry_step("test")

        assert state is RunState.COMPLETED
        assert orchestrator.run.status_of("commit") is StepStatus.COMPLETED
        assert orchestrator.run.step_states["test"].attempts == 2
        assert orchestrator.run.step_states["test"].error is None
        assert len(orchestrator.run.history) == 5

    @pytest.mark.asyncio
    async def test_retry_requires_failed_step(self, orchestrator_factory):
        orchestrator = orchestrator_factory({StepKind.LINT: failing()})
        await orchestrator.start_run("quick_fix")

        with pytest.raises(RunStateError):
            await orchestrator.retry_step("init")
        with pytest.raises(RunStateError):
            await orchestrator.retry_step("deploy_to_mars")
        assert orchestrator.state is RunState.FAILED

    @pytest.mark.asyncio
    async def test_retry_on_completed_run_is_rejected(self, orchestrator):
        await orchestrator.start_run(linear_template())
        with pytest.raises(RunStateError):
            await orchestrator.retry_step("init")


class TestManualApproval:
    @pytest.mark.asyncio
    async def test_run_waits_for_approval(self, orchestrator):
        state = await orchestrator.start_run(approval_template())

        assert state is RunState.AWAITING_APPROVAL
        assert orchestrator.run.status_of("production") is StepStatus.WAITING
        assert orchestrator.run.cursor == 2
        assert orchestrator.run.status_of("notify") is StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_approve_continues(self, orchestrator):
        await orchestrator.start_run(approval_template())

        state = await orchestrator.approve_waiting_step()

        assert state is RunState.COMPLETED
        assert orchestrator.run.status_of("production") is StepStatus.COMPLETED
        assert orchestrator.run.context.deployment("production") is not None

    @pytest.mark.asyncio
    async def test_approval_still_checks_remaining_conditions(self, orchestrator_factory):
        degraded = DeploymentRecord("staging", DeploymentHealth.DEGRADED)
        orchestrator = orchestrator_factory(
            {StepKind.STAGE: reporting(ContextPatch().with_deployment(degraded))}
        )
        await orchestrator.start_run(approval_template())

        state = await orchestrator.approve_waiting_step()

        assert state is RunState.COMPLETED
        assert orchestrator.run.status_of("production") is StepStatus.SKIPPED
        assert "not healthy" in orchestrator.run.step_states["production"].reason

    @pytest.mark.asyncio
    async def test_skip_waiting_step(self, orchestrator):
        await orchestrator.start_run(approval_template())

        state = await orchestrator.skip_waiting_step()

        assert state is RunState.COMPLETED
        assert orchestrator.run.status_of("production") is StepStatus.SKIPPED
        assert orchestrator.run.status_of("notify") is StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_approve_without_waiting_step(self, orchestrator):
        await orchestrator.start_run(linear_template())
        before = orchestrator.run.statuses()

        with pytest.raises(InvalidResumeError):
            await orchestrator.approve_waiting_step()
        with pytest.raises(InvalidResumeError):
            await orchestrator.skip_waiting_step()

        assert orchestrator.state is RunState.COMPLETED
        assert orchestrator.run.statuses() == before


class TestStartAndReset:
    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, orchestrator):
        await orchestrator.start_run(linear_template())
        with pytest.raises(RunStateError):
            await orchestrator.start_run(linear_template())

    @pytest.mark.asyncio
    async def test_invalid_template_rejected_without_mutation(self, orchestrator):
        before = orchestrator.run
        template = WorkflowTemplate("Broken", (StepSpec("teleport"),))

        with pytest.raises(TemplateValidationError) as exc_info:
            await orchestrator.start_run(template)

        assert "teleport" in str(exc_info.value)
        assert orchestrator.run is before
        assert orchestrator.state is RunState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_template_name(self, orchestrator):
        with pytest.raises(TemplateNotFoundError):
            await orchestrator.start_run("does_not_exist")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing_kind", [None, StepKind.GENERATE])
    async def test_reset_yields_fresh_idle_run(self, orchestrator_factory, failing_kind):
        overrides = {failing_kind: failing()} if failing_kind else None
        orchestrator = orchestrator_factory(overrides)
        await orchestrator.start_run(linear_template(), ContextPatch(branch="feature/x"))
        old_run_id = orchestrator.run.run_id

        for _ in range(2):
            assert orchestrator.reset() is RunState.IDLE
            run = orchestrator.run
            assert run.run_id != old_run_id
            assert run.history == []
            assert run.step_states == {}
            assert run.context.branch is None
            assert run.cursor is None

        assert await orchestrator.start_run(linear_template()) in (
            RunState.COMPLETED,
            RunState.FAILED,
        )

    @pytest.mark.asyncio
    async def test_reset_abandons_in_flight_step(self, orchestrator_factory):
        gate = GatedOperation()
        orchestrator = orchestrator_factory({StepKind.GENERATE: gate})

        task = asyncio.create_task(orchestrator.start_run(linear_template()))
        await gate.started.wait()
        abandoned = orchestrator.run
        orchestrator.reset()
        gate.release.set()

        assert await task is RunState.IDLE
        assert abandoned.status_of("generate") is StepStatus.RUNNING
        assert orchestrator.run.history == []

    @pytest.mark.asyncio
    async def test_reset_wakes_paused_loop(self, orchestrator_factory):
        gate = GatedOperation()
        orchestrator = orchestrator_factory({StepKind.INIT: gate})

        task = asyncio.create_task(orchestrator.start_run(linear_template()))
        await gate.started.wait()
        orchestrator.pause()
        gate.release.set()
        await wait_until(lambda: orchestrator.run.cursor == 1)

        orchestrator.reset()

        assert await task is RunState.IDLE
