"""
Declarative step conditions and their evaluation.

A step runs only when every one of its conditions holds. Conditions are
checked in declaration order and the first one that does not hold decides the
outcome: ``Skip`` for an unmet fact, ``Wait`` for a pending manual approval.
Checking a condition never mutates anything, so a step's conditions can be
re-evaluated any number of times.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, ClassVar

from .context import DeploymentHealth, ExecutionContext
from .steps import StepStatus


class Decision(Enum):
    """What the orchestrator should do with a step."""

    PROCEED = "proceed"
    SKIP = "skip"
    WAIT = "wait"


@dataclass(frozen=True)
class ConditionOutcome:
    """Result of evaluating a step's conditions."""

    decision: Decision
    reason: str | None = None

    @classmethod
    def proceed(cls) -> "ConditionOutcome":
        return cls(Decision.PROCEED)

    @classmethod
    def skip(cls, reason: str) -> "ConditionOutcome":
        return cls(Decision.SKIP, reason)

    @classmethod
    def wait(cls, reason: str) -> "ConditionOutcome":
        return cls(Decision.WAIT, reason)


@dataclass(frozen=True)
class ConditionScope:
    """Read-only view of run state a condition is checked against."""

    context: ExecutionContext
    statuses: Mapping[str, StepStatus]
    step_id: str
    previous_step_id: str | None = None
    approved: bool = False


class Condition(ABC):
    """A declarative gate in front of a step."""

    type_tag: ClassVar[str]

    @abstractmethod
    def check(self, scope: ConditionScope) -> ConditionOutcome:
        """Check the condition against ``scope``."""
        ...

    @abstractmethod
    def describe(self) -> str:
        """Short human label."""
        ...

    def validate(self) -> list[str]:
        """Problems that prevent this condition from being evaluated."""
        return []

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type_tag, **asdict(self)}


@dataclass(frozen=True)
class PreviousStepSucceeded(Condition):
    """The named step (or the preceding one) completed."""

    type_tag: ClassVar[str] = "previous_success"

    step_id: str | None = None

    def check(self, scope: ConditionScope) -> ConditionOutcome:
        target = self.step_id or scope.previous_step_id
        if target is None:
            return ConditionOutcome.skip("No previous step to depend on")
        status = scope.statuses.get(target)
        if status is not StepStatus.COMPLETED:
            state = status.value if status else "unknown"
            return ConditionOutcome.skip(f"Step '{target}' did not succeed ({state})")
        return ConditionOutcome.proceed()

    def describe(self) -> str:
        return f"After {self.step_id}" if self.step_id else "After Success"


@dataclass(frozen=True)
class ScoreAtLeast(Condition):
    """The accumulated review score reaches ``threshold``."""

    type_tag: ClassVar[str] = "ai_approval"

    threshold: int = 70

    def check(self, scope: ConditionScope) -> ConditionOutcome:
        score = scope.context.score
        if score < self.threshold:
            return ConditionOutcome.skip(
                f"AI approval score {score} below threshold {self.threshold}"
            )
        return ConditionOutcome.proceed()

    def describe(self) -> str:
        return f"AI Score >= {self.threshold}"

    def validate(self) -> list[str]:
        if not 0 <= self.threshold <= 100:
            return [f"score threshold {self.threshold} outside 0-100"]
        return []


@dataclass(frozen=True)
class SecurityClean(Condition):
    """No security issues have been reported."""

    type_tag: ClassVar[str] = "security_pass"

    def check(self, scope: ConditionScope) -> ConditionOutcome:
        issues = scope.context.issue_count
        if issues > 0:
            return ConditionOutcome.skip(f"Security scan found {issues} issue(s)")
        return ConditionOutcome.proceed()

    def describe(self) -> str:
        return "Security Pass"


@dataclass(frozen=True)
class AllTestsPassed(Condition):
    """The test suite has reported a full pass."""

    type_tag: ClassVar[str] = "all_tests_pass"

    def check(self, scope: ConditionScope) -> ConditionOutcome:
        if scope.context.all_tests_passed is not True:
            return ConditionOutcome.skip("Not all tests passed")
        return ConditionOutcome.proceed()

    def describe(self) -> str:
        return "All Tests Pass"


@dataclass(frozen=True)
class ManualApproval(Condition):
    """A person must approve the step before it runs."""

    type_tag: ClassVar[str] = "manual_approval"

    def check(self, scope: ConditionScope) -> ConditionOutcome:
        if scope.approved:
            return ConditionOutcome.proceed()
        return ConditionOutcome.wait(f"Manual approval required for '{scope.step_id}'")

    def describe(self) -> str:
        return "Manual Approval"


@dataclass(frozen=True)
class ExternalHealthOk(Condition):
    """An environment deployed earlier in the run reports healthy."""

    type_tag: ClassVar[str] = "staging_healthy"

    min_duration_seconds: int = 300
    environment: str = "staging"

    def check(self, scope: ConditionScope) -> ConditionOutcome:
        record = scope.context.deployment(self.environment)
        if record is None or record.health is not DeploymentHealth.HEALTHY:
            return ConditionOutcome.skip(f"{self.environment.capitalize()} environment not healthy")
        return ConditionOutcome.proceed()

    def describe(self) -> str:
        return f"{self.environment.capitalize()} OK ({self.min_duration_seconds}s)"

    def validate(self) -> list[str]:
        problems = []
        if self.min_duration_seconds < 0:
            problems.append("health duration must not be negative")
        if not self.environment:
            problems.append("health check needs an environment")
        return problems


class BranchOperator(Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"


@dataclass(frozen=True)
class BranchComparison(Condition):
    """The ``branch`` fact compares to ``value`` under ``operator``."""

    type_tag: ClassVar[str] = "branch"

    operator: str = BranchOperator.NOT_EQUALS.value
    value: str = "main"

    def check(self, scope: ConditionScope) -> ConditionOutcome:
        branch = scope.context.branch or ""
        matches = branch == self.value
        if self.operator == BranchOperator.NOT_EQUALS.value:
            matches = not matches
        if not matches:
            return ConditionOutcome.skip(
                f"Branch '{branch}' fails {self.operator} '{self.value}'"
            )
        return ConditionOutcome.proceed()

    def describe(self) -> str:
        return f"Branch {self.operator} {self.value}"

    def validate(self) -> list[str]:
        allowed = {op.value for op in BranchOperator}
        if self.operator not in allowed:
            return [f"unknown branch operator '{self.operator}'"]
        return []


CONDITION_TYPES: dict[str, type[Condition]] = {
    cls.type_tag: cls
    for cls in (
        PreviousStepSucceeded,
        ScoreAtLeast,
        SecurityClean,
        AllTestsPassed,
        ManualApproval,
        ExternalHealthOk,
        BranchComparison,
    )
}

# Keys used by templates exported from the web client
_FIELD_ALIASES = {"stepId": "step_id", "duration": "min_duration_seconds"}


def condition_from_dict(data: Mapping[str, Any]) -> Condition:
    """Build a condition from its tagged dict form."""
    tag = data.get("type")
    cls = CONDITION_TYPES.get(tag)  # type: ignore[arg-type]
    if cls is None:
        raise ValueError(f"Unknown condition type: {tag!r}")
    kwargs = {_FIELD_ALIASES.get(k, k): v for k, v in data.items() if k != "type"}
    return cls(**kwargs)


def evaluate(conditions: Iterable[Condition], scope: ConditionScope) -> ConditionOutcome:
    """Evaluate conditions in order; the first that does not hold decides."""
    for condition in conditions:
        outcome = condition.check(scope)
        if outcome.decision is not Decision.PROCEED:
            return outcome
    return ConditionOutcome.proceed()
