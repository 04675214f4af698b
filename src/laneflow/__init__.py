"""
laneflow - conditional workflow orchestration for code-change pipelines

Runs templates of typed steps (analyze, review, test, commit, deploy...) one
after another, gating each step on declarative conditions over the facts
earlier steps produced. Runs can be paused, resumed, retried, held for manual
approval and rolled back to a checkpoint after a failure.

Quick Start:
    >>> from laneflow import ContextPatch, StepExecutor, WorkflowOrchestrator
    >>> from laneflow.operations import build_operation_table
    >>>
    >>> orchestrator = WorkflowOrchestrator(StepExecutor(build_operation_table()))
    >>> state = await orchestrator.start_run("standard", ContextPatch(branch="feature/x"))
    >>> print(state, orchestrator.run.statuses())

CLI:
    $ laneflow --list-templates
    $ laneflow --template full_deployment --tasks 6 --auto-approve

Configuration:
    - LANEFLOW_SEED=1337 (seeded simulated operations)
    - LANEFLOW_ORCHESTRATOR__BATCH_SIZE=3 (concurrent runs per window)
    - LANEFLOW_OBSERVABILITY__LOG_LEVEL=INFO
"""

__version__ = "1.0.0"

from .config.settings import Settings
from .core.context import ContextPatch, ExecutionContext
from .core.executor import OperationOutcome, StepExecutor
from .core.orchestrator import WorkflowOrchestrator
from .core.state_machine import RunState
from .core.templates import TemplateRegistry, WorkflowTemplate

__all__ = [
    "ContextPatch",
    "ExecutionContext",
    "OperationOutcome",
    "RunState",
    "Settings",
    "StepExecutor",
    "TemplateRegistry",
    "WorkflowOrchestrator",
    "WorkflowTemplate",
]
