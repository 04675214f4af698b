"""
Global pytest configuration and fixtures for test isolation.

Resets the process-wide observability and determinism state before every test
and provides stub operation tables for driving the orchestrator.
"""

import asyncio
import os
import random
from collections.abc import Callable, Mapping

import pytest

from laneflow.config.settings import OrchestratorConfig, get_settings
from laneflow.core.context import ContextPatch, ExecutionContext
from laneflow.core.determinism import _reset_config_hash_for_tests
from laneflow.core.executor import OperationOutcome, StepExecutor, StepOperation
from laneflow.core.orchestrator import WorkflowOrchestrator
from laneflow.core.steps import StepKind
from laneflow.observability.logging import clear_run_id
from laneflow.observability.metrics import _reset_metrics_for_tests
from laneflow.observability.tracing import _reset_tracing_for_tests


def reset_all_global_state():
    """Reset all global state and reseed."""
    random.seed(1337)
    os.environ["PYTHONHASHSEED"] = "1337"
    _reset_config_hash_for_tests()
    _reset_metrics_for_tests()
    _reset_tracing_for_tests()
    clear_run_id()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation to ensure clean state for each test."""
    reset_all_global_state()
    yield


async def ok_operation(kind: StepKind, context: ExecutionContext) -> OperationOutcome:
    return OperationOutcome(True, f"{kind.value} done")


def make_operations(
    overrides: Mapping[StepKind, StepOperation] | None = None,
) -> dict[StepKind, StepOperation]:
    """Operation table where every kind succeeds unless overridden."""
    table: dict[StepKind, StepOperation] = {kind: ok_operation for kind in StepKind}
    table.update(overrides or {})
    return table


def reporting(patch: ContextPatch, output: str = "ok") -> StepOperation:
    """Operation that succeeds and reports ``patch``."""

    async def operation(kind: StepKind, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(True, output, patch)

    return operation


def failing(error: str = "boom") -> StepOperation:
    async def operation(kind: StepKind, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(False, "", error=error)

    return operation


class GatedOperation:
    """Operation that blocks until released, for observing in-flight steps."""

    def __init__(self, outcome: OperationOutcome | None = None):
        self.outcome = outcome or OperationOutcome(True, "gated done")
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self, kind: StepKind, context: ExecutionContext) -> OperationOutcome:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return self.outcome


async def wait_until(predicate: Callable[[], bool], ticks: int = 200) -> None:
    """Yield to the loop until ``predicate`` holds."""
    for _ in range(ticks):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def operations():
    return make_operations()


@pytest.fixture
def orchestrator_factory():
    """Build an orchestrator over stub operations."""

    def factory(overrides=None, **kwargs) -> WorkflowOrchestrator:
        kwargs.setdefault("config", OrchestratorConfig())
        return WorkflowOrchestrator(StepExecutor(make_operations(overrides)), **kwargs)

    return factory


@pytest.fixture
def orchestrator(orchestrator_factory):
    return orchestrator_factory()


@pytest.fixture
def recorded_events(orchestrator):
    events = []
    orchestrator.subscribe(events.append)
    return events
