"""
Step execution against collaborator-supplied operations.

The embedding application provides one async operation per step kind. The
executor times the call, keeps only the facts the kind is declared to produce,
records deployments for deployment kinds, and turns every failure mode
(reported failure, failing facts, missing operation, raised exception) into a
failed `StepResult`. It never raises into the orchestrator.
"""

import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.tracing import add_span_attributes, trace_span
from .context import ContextPatch, DeploymentRecord, ExecutionContext
from .steps import StepKind
from .templates import StepSpec

logger = get_logger(__name__)


@dataclass(frozen=True)
class OperationOutcome:
    """What a collaborator operation reports back."""

    success: bool
    output: str = ""
    patch: ContextPatch = field(default_factory=ContextPatch)
    error: str | None = None


StepOperation = Callable[[StepKind, ExecutionContext], Awaitable[OperationOutcome]]


@dataclass(frozen=True)
class StepResult:
    """Outcome of executing one step."""

    step_id: str
    kind: StepKind | None
    success: bool
    output: str = ""
    error: str | None = None
    context_patch: ContextPatch = field(default_factory=ContextPatch)
    elapsed_ms: int = 0


class StepExecutor:
    """Runs a step's operation and normalizes its result."""

    def __init__(self, operations: Mapping[StepKind, StepOperation] | None = None):
        self._operations: dict[StepKind, StepOperation] = dict(operations or {})

    @property
    def available_kinds(self) -> frozenset[StepKind]:
        return frozenset(self._operations)

    def register(self, kind: StepKind, operation: StepOperation) -> None:
        """Register or replace the operation for ``kind``."""
        self._operations[kind] = operation

    @trace_span("workflow.step.execute")
    async def execute(self, step: StepSpec, context: ExecutionContext) -> StepResult:
        """Execute ``step`` with a read-only copy of ``context``."""
        kind = step.resolved_kind
        start_time = time.perf_counter()
        if kind is None:
            return StepResult(
                step_id=step.step_id,
                kind=None,
                success=False,
                error=f"Unknown step kind '{step.kind}'",
            )

        add_span_attributes(step_id=step.step_id, step_kind=kind.value)
        operation = self._operations.get(kind)

        try:
            if operation is None:
                raise LookupError(f"No operation registered for step kind '{kind.value}'")
            outcome = await operation(kind, context.snapshot())
            if not isinstance(outcome, OperationOutcome):
                raise TypeError(
                    f"Operation for '{kind.value}' returned {type(outcome).__name__}, "
                    "expected OperationOutcome"
                )
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - start_time) * 1000)
            error = str(e) or type(e).__name__
            logger.error(f"Step '{step.step_id}' raised: {error}", step_kind=kind.value)
            get_metrics_collector().record_step_execution(kind.value, elapsed_ms, False)
            return StepResult(
                step_id=step.step_id,
                kind=kind,
                success=False,
                error=error,
                elapsed_ms=elapsed_ms,
            )

        info = kind.info
        patch = outcome.patch.restrict(info.produces)
        dropped = outcome.patch.written_facts() - patch.written_facts()
        if dropped:
            logger.debug(
                f"Ignoring undeclared facts from '{step.step_id}'", facts=sorted(dropped)
            )

        success = outcome.success
        error = outcome.error
        if not success and not error:
            error = f"{info.label} reported failure"
        if success and info.can_fail and patch.all_tests_passed is False:
            success = False
            error = error or "Tests failed"

        if success and info.deploy_environment and info.deploy_environment not in patch.deployments:
            patch = patch.with_deployment(DeploymentRecord(environment=info.deploy_environment))

        elapsed_ms = int((time.perf_counter() - start_time) * 1000)
        get_metrics_collector().record_step_execution(kind.value, elapsed_ms, success)
        logger.timed(
            f"Step '{step.step_id}' {'succeeded' if success else 'failed'}",
            elapsed_ms,
            step_kind=kind.value,
        )

        return StepResult(
            step_id=step.step_id,
            kind=kind,
            success=success,
            output=outcome.output,
            error=None if success else error,
            context_patch=patch,
            elapsed_ms=elapsed_ms,
        )
