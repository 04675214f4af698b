"""
Workflow orchestrator: drives one run through its template.

The orchestrator owns a single `WorkflowRun` at a time. Steps run strictly
one after another; the driving loop suspends in two places:

- before the next step while a pause is requested (an ``asyncio.Event`` gate),
- when a step's conditions yield ``Wait``. The loop returns and the run sits in
  ``awaiting_approval`` until `approve_waiting_step` or `skip_waiting_step`
  drives it again.

Reset abandons a run, it does not preempt it: an executor call already in
flight runs to completion and its result is discarded.

Usage:
    >>> orchestrator = WorkflowOrchestrator(StepExecutor(operations))
    >>> orchestrator.subscribe(print)
    >>> state = await orchestrator.start_run("standard", ContextPatch(branch="feature/x"))
"""

import asyncio
import time
from types import MappingProxyType

from ..config.settings import OrchestratorConfig
from ..observability.logging import clear_run_id, get_logger, set_run_id
from ..observability.metrics import get_metrics_collector
from ..observability.tracing import add_span_attributes, trace_span
from .conditions import ConditionScope, Decision, evaluate
from .context import ContextPatch, ExecutionContext
from .errors import InvalidResumeError, RunStateError, TemplateValidationError
from .events import (
    EventBus,
    EventHandler,
    LogLevel,
    LogLine,
    RollbackAvailable,
    RunFinished,
    RunStateChanged,
    StepStatusChanged,
    WorkflowEvent,
)
from .executor import StepExecutor
from .rollback import CompensatedStep, RollbackController
from .run import StepHistoryEntry, WorkflowRun
from .state_machine import RunState
from .steps import StepStatus
from .templates import RollbackStrategy, TemplateRegistry, WorkflowTemplate

logger = get_logger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logger.info,
    LogLevel.SUCCESS: logger.info,
    LogLevel.WARNING: logger.warning,
    LogLevel.ERROR: logger.error,
}


class WorkflowOrchestrator:
    """Sequences condition evaluation and step execution for one run."""

    def __init__(
        self,
        executor: StepExecutor,
        *,
        registry: TemplateRegistry | None = None,
        rollback: RollbackController | None = None,
        config: OrchestratorConfig | None = None,
        events: EventBus | None = None,
    ):
        self.executor = executor
        self.registry = registry or TemplateRegistry()
        self.config = config or OrchestratorConfig()
        self.rollback_controller = rollback or RollbackController(
            step_delay=self.config.rollback_step_delay
        )
        self.events = events or EventBus()

        self._run = WorkflowRun.idle(self.config.log_buffer_size)
        self._resume_gate = asyncio.Event()
        self._resume_gate.set()
        self._rolling_back: WorkflowRun | None = None

    @property
    def run(self) -> WorkflowRun:
        return self._run

    @property
    def state(self) -> RunState:
        return self._run.state

    def subscribe(
        self, handler: EventHandler, event_type: type[WorkflowEvent] | None = None
    ):
        return self.events.subscribe(handler, event_type)

    # Inbound operations

    async def start_run(
        self,
        template: WorkflowTemplate | str,
        initial_context: ExecutionContext | ContextPatch | None = None,
    ) -> RunState:
        """Start a run and drive it until it finishes or has to wait."""
        if self._run.state is not RunState.IDLE:
            raise RunStateError(
                f"A run is already {self._run.state.value}; reset before starting another"
            )
        if isinstance(template, str):
            template = self.registry.get(template)

        problems = template.run_problems(self.executor.available_kinds)
        if problems:
            raise TemplateValidationError(template.name, problems)

        if isinstance(initial_context, ExecutionContext):
            context = initial_context.snapshot()
        else:
            context = ExecutionContext.from_patch(initial_context)

        run = WorkflowRun.start(template, context, self.config.log_buffer_size)
        self._run = run
        self._resume_gate.set()
        set_run_id(run.run_id)

        self._transition(run, "start")
        self._log(run, f"Starting workflow: {template.name}")
        return await self._drive(run)

    def pause(self) -> None:
        """Request a pause; honored before the next step starts."""
        run = self._run
        if run.state is RunState.PAUSED:
            return
        if run.state is not RunState.RUNNING:
            raise RunStateError(f"Cannot pause a run that is {run.state.value}")
        self._resume_gate.clear()
        self._transition(run, "pause")
        self._log(run, "Workflow paused", LogLevel.WARNING)

    def resume(self) -> None:
        """Clear a pause request."""
        run = self._run
        if run.state is RunState.RUNNING:
            return
        if run.state is not RunState.PAUSED:
            raise InvalidResumeError(f"Cannot resume a run that is {run.state.value}")
        self._transition(run, "resume")
        self._resume_gate.set()
        self._log(run, "Workflow resumed")

    def skip_current_step(self) -> str:
        """Mark the current step skipped without evaluating its conditions.

        A step already handed to the executor runs to completion; its result is
        discarded once it arrives. Returns the skipped step's id.
        """
        run = self._run
        if run.state not in (RunState.RUNNING, RunState.PAUSED) or run.cursor is None:
            raise RunStateError(f"Cannot skip a step while the run is {run.state.value}")
        if run.cursor >= len(run.template.steps):
            raise RunStateError("No step left to skip")

        index = run.cursor
        step = run.template.steps[index]
        in_flight = run.step_states[step.step_id].status is StepStatus.RUNNING
        self._set_status(run, index, StepStatus.SKIPPED, reason="Skipped by user")
        if in_flight:
            run.pending_skip = index
            self._log(
                run, f"Skipped: {step.label} (in-flight result discarded)", LogLevel.WARNING
            )
        else:
            run.cursor = index + 1
            self._log(run, f"Skipped: {step.label}", LogLevel.WARNING)
        return step.step_id

    async def retry_step(self, step_id: str) -> RunState:
        """Re-run a failed step, re-evaluating its conditions."""
        run = self._run
        if run.state is not RunState.FAILED:
            raise RunStateError(f"Cannot retry while the run is {run.state.value}")
        self._require_no_rollback(run)
        index = run.template.index_of(step_id)
        if index < 0:
            raise RunStateError(f"Step '{step_id}' is not part of this run")
        if run.step_states[step_id].status is not StepStatus.FAILED:
            raise RunStateError(f"Only failed steps can be retried; '{step_id}' is not failed")

        self._set_status(run, index, StepStatus.PENDING)
        run.cursor = index
        run.finished_at = None
        self._transition(run, "retry")
        self._log(run, f"Retrying: {run.template.steps[index].label}")
        return await self._drive(run)

    async def approve_waiting_step(self) -> RunState:
        """Approve the waiting step and continue the run."""
        run = self._require_waiting()
        index = run.cursor
        step = run.template.steps[index]
        run.step_states[step.step_id].approved = True
        self._set_status(run, index, StepStatus.PENDING)
        self._transition(run, "approve")
        self._log(run, f"Approved: {step.label}", LogLevel.SUCCESS)
        return await self._drive(run)

    async def skip_waiting_step(self) -> RunState:
        """Skip the waiting step and continue with the next one."""
        run = self._require_waiting()
        index = run.cursor
        step = run.template.steps[index]
        self._set_status(run, index, StepStatus.SKIPPED, reason="Skipped at approval")
        run.cursor = index + 1
        self._transition(run, "skip_waiting")
        self._log(run, f"Skipped: {step.label}", LogLevel.WARNING)
        return await self._drive(run)

    def rollback_targets(self) -> list[StepHistoryEntry]:
        """Checkpoints the caller may roll back to, if rollback is on offer."""
        run = self._run
        if run.state is not RunState.FAILED:
            return []
        return self.rollback_controller.valid_targets(run)

    async def request_rollback(self, to_step_id: str) -> list[CompensatedStep]:
        """Roll a failed run back to the checkpoint ``to_step_id``."""
        run = self._run
        if run.state is not RunState.FAILED:
            raise RunStateError(
                f"Rollback is only offered after a failure, run is {run.state.value}"
            )
        self._require_no_rollback(run)

        self._log(run, f"Rolling back to: {to_step_id}", LogLevel.WARNING)

        def on_reverted(entry: StepHistoryEntry) -> None:
            if self._run is not run:
                return
            self._set_status(run, entry.index, StepStatus.ROLLED_BACK, reason="Rolled back")
            self._log(run, f"Rolled back: {entry.kind.info.label}", LogLevel.WARNING)

        self._rolling_back = run
        try:
            reverted = await self.rollback_controller.rollback(run, to_step_id, on_reverted)
        finally:
            if self._rolling_back is run:
                self._rolling_back = None
        if self._run is not run:
            return reverted

        if run.template.rollback_strategy is RollbackStrategy.STEP:
            run.cursor = run.template.index_of(reverted[0].step_id)
        else:
            run.cursor = run.template.index_of(to_step_id) + 1
        self._log(run, "Rollback complete", LogLevel.SUCCESS)
        return reverted

    def reset(self) -> RunState:
        """Discard the current run and start over with a fresh idle one."""
        previous = self._run
        if previous.state is RunState.RUNNING and previous.cursor is not None:
            logger.info("Abandoning run with a step in flight", abandoned=previous.run_id)
        elif self._rolling_back is previous:
            logger.info("Abandoning run with a rollback in progress", abandoned=previous.run_id)

        self._run = WorkflowRun.idle(self.config.log_buffer_size)
        # Wakes a loop parked at the pause gate; it sees the run was abandoned
        self._resume_gate.set()
        clear_run_id()

        if previous.state is not RunState.IDLE:
            self.events.publish(
                RunStateChanged(previous.run_id, previous.state, RunState.IDLE)
            )
            logger.info("Run reset", abandoned=previous.run_id)
        return self._run.state

    # Driving loop

    @trace_span("workflow.run.drive")
    async def _drive(self, run: WorkflowRun) -> RunState:
        steps = run.template.steps
        add_span_attributes(run_id=run.run_id, template=run.template.key)

        while run.cursor is not None and run.cursor < len(steps):
            if not self._resume_gate.is_set():
                await self._resume_gate.wait()
            if self._run is not run:
                return self._run.state
            # A skip while parked may have moved past the last step
            if run.cursor is None or run.cursor >= len(steps):
                break

            index = run.cursor
            step = steps[index]
            step_state = run.step_states[step.step_id]
            if step_state.status.is_terminal:
                run.cursor = index + 1
                continue

            outcome = evaluate(step.conditions, self._scope(run, index))
            if outcome.decision is Decision.WAIT:
                self._set_status(run, index, StepStatus.WAITING, reason=outcome.reason)
                self._transition(run, "wait")
                self._log(run, f"Waiting: {step.label} - {outcome.reason}", LogLevel.WARNING)
                return run.state

            if outcome.decision is Decision.SKIP:
                self._set_status(run, index, StepStatus.SKIPPED, reason=outcome.reason)
                get_metrics_collector().record_condition_skip(step.resolved_kind.value)
                self._log(
                    run,
                    f"Conditions not met for {step.label}, skipping: {outcome.reason}",
                    LogLevel.WARNING,
                )
                run.cursor = index + 1
                continue

            step_state.attempts += 1
            self._set_status(run, index, StepStatus.RUNNING)
            self._log(run, f"Starting: {step.label}")

            result = await self.executor.execute(step, run.context)

            if self._run is not run:
                logger.info(
                    f"Discarding result of '{step.step_id}' from an abandoned run",
                    abandoned=run.run_id,
                )
                return self._run.state

            if run.pending_skip == index:
                run.pending_skip = None
                run.step_states[step.step_id].output = result.output
                run.cursor = index + 1
                continue

            if result.success:
                run.context.apply(result.context_patch)
                self._set_status(
                    run,
                    index,
                    StepStatus.COMPLETED,
                    output=result.output,
                    elapsed_ms=result.elapsed_ms,
                )
                run.history.append(
                    StepHistoryEntry(
                        step_id=step.step_id,
                        kind=result.kind,
                        index=index,
                        status=StepStatus.COMPLETED,
                        context=run.context.snapshot(),
                    )
                )
                self._log(run, f"Completed: {step.label} ({result.elapsed_ms}ms)", LogLevel.SUCCESS)
                run.cursor = index + 1
                continue

            self._set_status(
                run,
                index,
                StepStatus.FAILED,
                output=result.output,
                error=result.error,
                elapsed_ms=result.elapsed_ms,
            )
            self._log(run, f"Failed: {step.label} - {result.error}", LogLevel.ERROR)
            self._transition(run, "fail")
            self._offer_rollback(run)
            self._finish(run)
            return run.state

        run.cursor = None
        self._transition(run, "complete")
        self._log(run, "Workflow completed successfully!", LogLevel.SUCCESS)
        self._finish(run)
        return run.state

    # Helpers

    def _require_no_rollback(self, run: WorkflowRun) -> None:
        if self._rolling_back is run:
            raise RunStateError("A rollback is still in progress")

    def _require_waiting(self) -> WorkflowRun:
        run = self._run
        if run.state is not RunState.AWAITING_APPROVAL:
            raise InvalidResumeError(f"No step is waiting for approval (run is {run.state.value})")
        return run

    def _scope(self, run: WorkflowRun, index: int) -> ConditionScope:
        steps = run.template.steps
        step_id = steps[index].step_id
        return ConditionScope(
            context=run.context,
            statuses=MappingProxyType(run.statuses()),
            step_id=step_id,
            previous_step_id=steps[index - 1].step_id if index > 0 else None,
            approved=run.step_states[step_id].approved,
        )

    def _transition(self, run: WorkflowRun, event: str) -> None:
        previous, current = run.state_machine.fire(event)
        self.events.publish(RunStateChanged(run.run_id, previous, current))

    def _set_status(
        self,
        run: WorkflowRun,
        index: int,
        status: StepStatus,
        *,
        output: str | None = None,
        error: str | None = None,
        elapsed_ms: int | None = None,
        reason: str | None = None,
    ) -> None:
        step_id = run.template.steps[index].step_id
        step_state = run.step_states[step_id]
        if status is StepStatus.PENDING:
            approved = step_state.approved
            step_state.clear()
            step_state.approved = approved
        step_state.status = status
        if output is not None:
            step_state.output = output
        if error is not None:
            step_state.error = error
        if elapsed_ms is not None:
            step_state.elapsed_ms = elapsed_ms
        if reason is not None:
            step_state.reason = reason

        self.events.publish(
            StepStatusChanged(
                run_id=run.run_id,
                step_id=step_id,
                index=index,
                status=status,
                output=output,
                error=error,
                elapsed_ms=elapsed_ms,
                reason=reason,
            )
        )

    def _log(self, run: WorkflowRun, message: str, level: LogLevel = LogLevel.INFO) -> None:
        line = LogLine(run.run_id, message, level)
        run.logs.append(line)
        _LOG_LEVELS[level](message, line=level.value)
        self.events.publish(line)

    def _offer_rollback(self, run: WorkflowRun) -> None:
        strategy = run.template.rollback_strategy
        if strategy is RollbackStrategy.NONE:
            return
        targets = tuple(entry.step_id for entry in self.rollback_controller.valid_targets(run))
        if not targets:
            self._log(run, "No completed steps to roll back to", LogLevel.WARNING)
            return
        self.events.publish(RollbackAvailable(run.run_id, strategy.value, targets))
        self._log(run, f"Rollback available ({strategy.value}): {', '.join(targets)}")

    def _finish(self, run: WorkflowRun) -> None:
        run.finished_at = time.time()
        self._resume_gate.set()
        get_metrics_collector().record_run_finished(run.template.key, run.state.value)
        self.events.publish(
            RunFinished(
                run_id=run.run_id,
                template=run.template.key,
                state=run.state,
                completed=run.count(StepStatus.COMPLETED),
                skipped=run.count(StepStatus.SKIPPED),
                failed=run.count(StepStatus.FAILED),
            )
        )
        logger.info(
            f"Run finished: {run.state.value}",
            template=run.template.key,
            completed=run.count(StepStatus.COMPLETED),
            skipped=run.count(StepStatus.SKIPPED),
        )
