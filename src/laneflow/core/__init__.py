"""
Core workflow engine.

- Step kinds with a closed operation table instead of string dispatch
- Typed execution context updated only through step patches
- Declarative conditions evaluated with first-failure short-circuit
- Run state machine with explicit pause and approval suspension
- Strategy-bounded rollback of completed steps
"""

from .conditions import (
    AllTestsPassed,
    BranchComparison,
    Condition,
    ConditionOutcome,
    ConditionScope,
    Decision,
    ExternalHealthOk,
    ManualApproval,
    PreviousStepSucceeded,
    ScoreAtLeast,
    SecurityClean,
    evaluate,
)
from .context import ContextPatch, DeploymentHealth, DeploymentRecord, ExecutionContext
from .errors import (
    InvalidResumeError,
    InvalidRollbackTargetError,
    RollbackNotAvailableError,
    RunStateError,
    TemplateNotFoundError,
    TemplateValidationError,
    WorkflowError,
)
from .executor import OperationOutcome, StepExecutor, StepResult
from .orchestrator import WorkflowOrchestrator
from .rollback import CompensatedStep, RollbackController
from .run import StepHistoryEntry, StepRuntimeState, WorkflowRun
from .state_machine import RunState, RunStateMachine
from .steps import StepKind, StepStatus
from .templates import (
    BUILTIN_TEMPLATES,
    RollbackStrategy,
    StepSpec,
    TemplateRegistry,
    WorkflowTemplate,
)

__all__ = [
    "AllTestsPassed",
    "BranchComparison",
    "Condition",
    "ConditionOutcome",
    "ConditionScope",
    "Decision",
    "ExternalHealthOk",
    "ManualApproval",
    "PreviousStepSucceeded",
    "ScoreAtLeast",
    "SecurityClean",
    "evaluate",
    "ContextPatch",
    "DeploymentHealth",
    "DeploymentRecord",
    "ExecutionContext",
    "InvalidResumeError",
    "InvalidRollbackTargetError",
    "RollbackNotAvailableError",
    "RunStateError",
    "TemplateNotFoundError",
    "TemplateValidationError",
    "WorkflowError",
    "OperationOutcome",
    "StepExecutor",
    "StepResult",
    "WorkflowOrchestrator",
    "CompensatedStep",
    "RollbackController",
    "StepHistoryEntry",
    "StepRuntimeState",
    "WorkflowRun",
    "RunState",
    "RunStateMachine",
    "StepKind",
    "StepStatus",
    "BUILTIN_TEMPLATES",
    "RollbackStrategy",
    "StepSpec",
    "TemplateRegistry",
    "WorkflowTemplate",
]
