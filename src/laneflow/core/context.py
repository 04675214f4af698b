"""
Execution context: the typed fact store accumulated during one workflow run.

Steps never write the context directly. Their operations return a
`ContextPatch`, and the orchestrator applies it after the step completes.
"""

import copy
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any

from .steps import FACT_DEPLOYMENTS


class DeploymentHealth(Enum):
    """Health of a deployed environment."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True)
class DeploymentRecord:
    """A deployment written by a deployment-kind step."""

    environment: str
    health: DeploymentHealth = DeploymentHealth.HEALTHY
    url: str | None = None
    deployed_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "health": self.health.value,
            "url": self.url,
            "deployed_at": self.deployed_at,
        }


@dataclass(frozen=True)
class ContextPatch:
    """Facts produced by one step. ``None`` means the fact was not written."""

    analyzed: bool | None = None
    review_score: int | None = None
    security_issues: int | None = None
    all_tests_passed: bool | None = None
    branch: str | None = None
    deployments: dict[str, DeploymentRecord] = field(default_factory=dict)

    def written_facts(self) -> set[str]:
        """Names of the facts this patch writes."""
        written = {
            f.name
            for f in fields(self)
            if f.name != FACT_DEPLOYMENTS and getattr(self, f.name) is not None
        }
        if self.deployments:
            written.add(FACT_DEPLOYMENTS)
        return written

    def restrict(self, allowed: frozenset[str]) -> "ContextPatch":
        """Drop every fact not in ``allowed``."""
        changes: dict[str, Any] = {}
        for name in self.written_facts() - allowed:
            changes[name] = {} if name == FACT_DEPLOYMENTS else None
        return replace(self, **changes) if changes else self

    def with_deployment(self, record: DeploymentRecord) -> "ContextPatch":
        return replace(self, deployments={**self.deployments, record.environment: record})

    def is_empty(self) -> bool:
        return not self.written_facts()


@dataclass
class ExecutionContext:
    """Mutable fact store owned by a single workflow run."""

    analyzed: bool = False
    review_score: int | None = None
    security_issues: int | None = None
    all_tests_passed: bool | None = None
    branch: str | None = None
    deployments: dict[str, DeploymentRecord] = field(default_factory=dict)

    @classmethod
    def from_patch(cls, patch: ContextPatch | None) -> "ExecutionContext":
        """Build a fresh context seeded with the facts in ``patch``."""
        context = cls()
        if patch is not None:
            context.apply(patch)
        return context

    @property
    def score(self) -> int:
        """Review score, defaulting to 0 when no review has run."""
        return self.review_score if self.review_score is not None else 0

    @property
    def issue_count(self) -> int:
        return self.security_issues if self.security_issues is not None else 0

    def apply(self, patch: ContextPatch) -> None:
        """Merge the facts written by ``patch``."""
        for name in patch.written_facts():
            if name == FACT_DEPLOYMENTS:
                self.deployments.update(patch.deployments)
            else:
                setattr(self, name, getattr(patch, name))

    def deployment(self, environment: str) -> DeploymentRecord | None:
        return self.deployments.get(environment)

    def snapshot(self) -> "ExecutionContext":
        """Independent copy of the current facts."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analyzed": self.analyzed,
            "review_score": self.review_score,
            "security_issues": self.security_issues,
            "all_tests_passed": self.all_tests_passed,
            "branch": self.branch,
            "deployments": {env: rec.to_dict() for env, rec in self.deployments.items()},
        }
