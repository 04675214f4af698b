"""
Catalog of step kinds.

Step kinds form a closed enumeration. Each kind carries display metadata, the
facts its operation is allowed to write into the execution context, and the
deployment environment it gates, if any.
"""

from dataclasses import dataclass
from enum import Enum


class StepKind(Enum):
    """Kinds of workflow steps."""

    INIT = "init"
    ANALYZE = "analyze"
    SECURITY = "security"
    GENERATE = "generate"
    REVIEW = "review"
    TEST = "test"
    LINT = "lint"
    DOCS = "docs"
    COMMIT = "commit"
    MERGE = "merge"
    BUILD = "build"
    STAGE = "stage"
    PRODUCTION = "production"
    NOTIFY = "notify"

    @classmethod
    def resolve(cls, value: "StepKind | str") -> "StepKind | None":
        """Resolve a kind or kind string, returning None when unknown."""
        if isinstance(value, StepKind):
            return value
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def info(self) -> "StepKindInfo":
        return STEP_CATALOG[self]


class StepStatus(Enum):
    """Runtime status of one step within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"
    WAITING = "waiting"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.ROLLED_BACK}
)


class StepCategory(Enum):
    """Display category for a step kind."""

    SETUP = "setup"
    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    TESTING = "testing"
    DOCS = "docs"
    VCS = "vcs"
    DEPLOYMENT = "deployment"
    MISC = "misc"


# Fact names a step may write
FACT_ANALYZED = "analyzed"
FACT_REVIEW_SCORE = "review_score"
FACT_SECURITY_ISSUES = "security_issues"
FACT_ALL_TESTS_PASSED = "all_tests_passed"
FACT_BRANCH = "branch"
FACT_DEPLOYMENTS = "deployments"


@dataclass(frozen=True)
class StepKindInfo:
    """Static description of a step kind."""

    label: str
    duration_ms: int
    description: str
    category: StepCategory
    produces: frozenset[str] = frozenset()
    deploy_environment: str | None = None
    can_fail: bool = False


STEP_CATALOG: dict[StepKind, StepKindInfo] = {
    StepKind.INIT: StepKindInfo(
        "Initialize", 800, "Setting up execution environment", StepCategory.SETUP
    ),
    StepKind.ANALYZE: StepKindInfo(
        "Analyze", 1500, "Analyzing code structure and dependencies", StepCategory.ANALYSIS,
        produces=frozenset({FACT_ANALYZED}),
    ),
    StepKind.SECURITY: StepKindInfo(
        "Security Scan", 2000, "Running security vulnerability scan", StepCategory.ANALYSIS,
        produces=frozenset({FACT_SECURITY_ISSUES}),
    ),
    StepKind.GENERATE: StepKindInfo(
        "Generate Code", 3000, "Generating code modifications", StepCategory.IMPLEMENTATION
    ),
    StepKind.REVIEW: StepKindInfo(
        "AI Review", 2000, "AI reviewing generated changes", StepCategory.REVIEW,
        produces=frozenset({FACT_REVIEW_SCORE}),
    ),
    StepKind.TEST: StepKindInfo(
        "Run Tests", 2500, "Running automated tests", StepCategory.TESTING,
        produces=frozenset({FACT_ALL_TESTS_PASSED}),
        can_fail=True,
    ),
    StepKind.LINT: StepKindInfo(
        "Lint & Format", 1000, "Running linter and formatter", StepCategory.TESTING
    ),
    StepKind.DOCS: StepKindInfo("Documentation", 1000, "Updating documentation", StepCategory.DOCS),
    StepKind.COMMIT: StepKindInfo("Commit", 500, "Committing changes", StepCategory.VCS),
    StepKind.MERGE: StepKindInfo(
        "Merge", 800, "Merging to target branch", StepCategory.VCS,
        produces=frozenset({FACT_BRANCH}),
    ),
    StepKind.BUILD: StepKindInfo(
        "Build", 3000, "Building production bundle", StepCategory.DEPLOYMENT
    ),
    StepKind.STAGE: StepKindInfo(
        "Stage Deploy", 2000, "Deploying to staging environment", StepCategory.DEPLOYMENT,
        produces=frozenset({FACT_DEPLOYMENTS}),
        deploy_environment="staging",
    ),
    StepKind.PRODUCTION: StepKindInfo(
        "Production", 2500, "Deploying to production", StepCategory.DEPLOYMENT,
        produces=frozenset({FACT_DEPLOYMENTS}),
        deploy_environment="production",
    ),
    StepKind.NOTIFY: StepKindInfo("Notify", 500, "Sending notifications", StepCategory.MISC),
}
