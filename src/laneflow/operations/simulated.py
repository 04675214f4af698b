"""
Simulated step operations.

Stand-ins for the AI, test, build and deployment integrations an embedding
application would supply. Outputs and facts mirror what the real integrations
report; randomness comes from a seeded generator so runs are reproducible.
"""

import asyncio
import random

from ..config.settings import SimulationConfig
from ..core.context import ContextPatch, DeploymentRecord, ExecutionContext
from ..core.executor import OperationOutcome, StepOperation
from ..core.steps import StepKind
from ..observability.logging import get_logger

logger = get_logger(__name__)

_STAGING_URL = "https://staging.example.com"
_PRODUCTION_URL = "https://example.com"


class SimulatedOperations:
    """One async operation per step kind, backed by a seeded RNG."""

    def __init__(
        self,
        config: SimulationConfig | None = None,
        seed: int = 1337,
        task_title: str = "Changes",
        file_count: int = 0,
        files_affected: int = 3,
    ):
        self.config = config or SimulationConfig()
        self.rng = random.Random(seed)
        self.task_title = task_title
        self.file_count = file_count
        self.files_affected = files_affected

    def table(self) -> dict[StepKind, StepOperation]:
        """Operation table covering every step kind."""
        return {kind: self.run for kind in StepKind}

    async def run(self, kind: StepKind, context: ExecutionContext) -> OperationOutcome:
        delay = kind.info.duration_ms / 1000 * self.config.duration_scale
        if delay:
            await asyncio.sleep(delay + self.rng.random() * 0.5 * self.config.duration_scale)
        handler = getattr(self, f"_{kind.value}")
        outcome = handler(context)
        logger.debug(f"Simulated {kind.value}", success=outcome.success)
        return outcome

    def _init(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(
            True, "Environment initialized successfully\nPython 3.12.4\npip 24.1"
        )

    def _analyze(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(
            True,
            f"Analyzed {self.file_count} files\nComplexity: Medium\nDependencies: 24",
            ContextPatch(analyzed=True),
        )

    def _security(self, context: ExecutionContext) -> OperationOutcome:
        issues = 1 if self.rng.random() < self.config.security_issue_rate else 0
        output = (
            f"Found {issues} security issue(s)" if issues else "No security vulnerabilities found"
        )
        return OperationOutcome(True, output, ContextPatch(security_issues=issues))

    def _generate(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(
            True, f"Generated changes for {self.files_affected} files\n+142 lines, -38 lines"
        )

    def _review(self, context: ExecutionContext) -> OperationOutcome:
        score = self.rng.randint(self.config.min_review_score, self.config.max_review_score)
        return OperationOutcome(
            True,
            f"AI Review Score: {score}/100\nCode quality: Good\nMaintainability: High",
            ContextPatch(review_score=score),
        )

    def _test(self, context: ExecutionContext) -> OperationOutcome:
        passed = self.rng.random() < self.config.test_pass_rate
        if passed:
            output = "All tests passed (24/24)\nCoverage: 87.5%"
        else:
            output = "Tests failed: 2 failures"
        return OperationOutcome(True, output, ContextPatch(all_tests_passed=passed))

    def _lint(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(True, "Linting passed\n0 errors, 2 warnings")

    def _docs(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(True, "Documentation updated\nREADME.md, CHANGELOG.md")

    def _commit(self, context: ExecutionContext) -> OperationOutcome:
        commit_hash = f"{self.rng.getrandbits(28):07x}"
        return OperationOutcome(True, f"Committed: {self.task_title}\nHash: {commit_hash}")

    def _merge(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(
            True, "Merged to main branch\nNo conflicts", ContextPatch(branch="main")
        )

    def _build(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(
            True, "Build successful\nWheel size: 245KB\nBuild time: 12.3s"
        )

    def _stage(self, context: ExecutionContext) -> OperationOutcome:
        record = DeploymentRecord("staging", url=_STAGING_URL)
        return OperationOutcome(
            True,
            f"Deployed to staging\nURL: {_STAGING_URL}",
            ContextPatch().with_deployment(record),
        )

    def _production(self, context: ExecutionContext) -> OperationOutcome:
        record = DeploymentRecord("production", url=_PRODUCTION_URL)
        return OperationOutcome(
            True,
            f"Deployed to production\nURL: {_PRODUCTION_URL}",
            ContextPatch().with_deployment(record),
        )

    def _notify(self, context: ExecutionContext) -> OperationOutcome:
        return OperationOutcome(
            True, "Notifications sent\nSlack: #deployments\nEmail: team@example.com"
        )


def build_operation_table(
    config: SimulationConfig | None = None, seed: int = 1337, **kwargs
) -> dict[StepKind, StepOperation]:
    """Operation table backed by a fresh `SimulatedOperations`."""
    return SimulatedOperations(config, seed=seed, **kwargs).table()
