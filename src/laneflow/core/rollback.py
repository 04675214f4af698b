"""
Rollback of completed steps after a failure.

The template's rollback strategy decides which checkpoints are offered:

- ``none``: rollback is never offered.
- ``step``: only the most recent checkpoint, which is the one step reverted.
- ``checkpoint``: any completed step; everything completed after it is reverted.
- ``full``: only the first completed step, reverting everything after it.

Steps are reverted in strict reverse completion order. Compensating actions are
optional; a failing one is recorded on its `CompensatedStep` and the rollback
carries on.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector, timer
from ..observability.tracing import trace_span
from .context import ExecutionContext
from .errors import InvalidRollbackTargetError, RollbackNotAvailableError
from .run import StepHistoryEntry, WorkflowRun
from .steps import StepKind, StepStatus
from .templates import RollbackStrategy

logger = get_logger(__name__)

CompensationOperation = Callable[[StepKind, ExecutionContext], Awaitable[None]]


@dataclass(frozen=True)
class CompensatedStep:
    """One step reverted by a rollback."""

    step_id: str
    kind: StepKind
    compensated: bool = False
    error: str | None = None


class RollbackController:
    """Computes valid rollback targets and reverts runs to them."""

    def __init__(
        self,
        compensations: Mapping[StepKind, CompensationOperation] | None = None,
        step_delay: float = 0.0,
    ):
        self._compensations = dict(compensations or {})
        self.step_delay = step_delay

    def valid_targets(self, run: WorkflowRun) -> list[StepHistoryEntry]:
        """Checkpoints the run's strategy allows rolling back to."""
        if run.template is None:
            return []
        checkpoints = run.checkpoints()
        strategy = run.template.rollback_strategy
        if strategy is RollbackStrategy.STEP:
            return checkpoints[-1:]
        if strategy is RollbackStrategy.CHECKPOINT:
            return checkpoints
        if strategy is RollbackStrategy.FULL:
            return checkpoints[:1]
        return []

    def plan(self, run: WorkflowRun, to_step_id: str) -> list[StepHistoryEntry]:
        """Entries a rollback to ``to_step_id`` would revert, newest first."""
        strategy = run.template.rollback_strategy if run.template else RollbackStrategy.NONE
        if strategy is RollbackStrategy.NONE:
            raise RollbackNotAvailableError("Rollback is disabled for this workflow")

        checkpoints = run.checkpoints()
        position = next(
            (i for i, entry in enumerate(checkpoints) if entry.step_id == to_step_id), None
        )
        if position is None:
            if any(entry.step_id == to_step_id for entry in run.history):
                raise InvalidRollbackTargetError(to_step_id, "step was already rolled back")
            raise InvalidRollbackTargetError(to_step_id, "step has not completed in this run")

        if checkpoints[position] not in self.valid_targets(run):
            raise InvalidRollbackTargetError(
                to_step_id, f"'{strategy.value}' rollback does not offer this checkpoint"
            )

        if strategy is RollbackStrategy.STEP:
            return [checkpoints[position]]
        return list(reversed(checkpoints[position + 1 :]))

    @trace_span("workflow.rollback")
    async def rollback(
        self,
        run: WorkflowRun,
        to_step_id: str,
        on_reverted: Callable[[StepHistoryEntry], None] | None = None,
    ) -> list[CompensatedStep]:
        """Revert ``run`` to the checkpoint ``to_step_id``.

        Validates before touching anything: an invalid target leaves the run
        exactly as it was.
        """
        entries = self.plan(run, to_step_id)
        strategy = run.template.rollback_strategy
        checkpoints = run.checkpoints()

        if strategy is RollbackStrategy.STEP:
            position = checkpoints.index(entries[0])
            restored = (
                checkpoints[position - 1].context if position > 0 else run.initial_context
            )
        else:
            restored = next(e.context for e in checkpoints if e.step_id == to_step_id)

        logger.info(
            f"Rolling back {len(entries)} step(s)",
            strategy=strategy.value,
            target=to_step_id,
        )

        reverted: list[CompensatedStep] = []
        with timer("workflow_rollback", {"strategy": strategy.value}):
            for entry in entries:
                reverted.append(await self._compensate(entry, run.context))
                run.step_states[entry.step_id].status = StepStatus.ROLLED_BACK
                if on_reverted is not None:
                    on_reverted(entry)
                if self.step_delay:
                    await asyncio.sleep(self.step_delay)

        run.context = restored.snapshot()
        get_metrics_collector().record_rollback(strategy.value, len(reverted))
        return reverted

    async def _compensate(
        self, entry: StepHistoryEntry, context: ExecutionContext
    ) -> CompensatedStep:
        operation = self._compensations.get(entry.kind)
        if operation is None:
            return CompensatedStep(entry.step_id, entry.kind)
        try:
            await operation(entry.kind, context.snapshot())
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Compensation for '{entry.step_id}' failed: {error}")
            return CompensatedStep(entry.step_id, entry.kind, compensated=False, error=error)
        return CompensatedStep(entry.step_id, entry.kind, compensated=True)
