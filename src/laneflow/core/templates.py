"""
Workflow templates and the template registry.

Templates are immutable: every edit returns a new template. The registry only
checks structural shape on save; whether a template can actually run (known
step kinds, registered operations, well-formed conditions) is checked when a
run starts, so templates that reference step kinds not yet wired up can still
be stored.
"""

import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from ..observability.logging import get_logger
from .conditions import (
    AllTestsPassed,
    BranchComparison,
    Condition,
    ExternalHealthOk,
    ManualApproval,
    PreviousStepSucceeded,
    ScoreAtLeast,
    SecurityClean,
    condition_from_dict,
)
from .errors import TemplateNotFoundError, TemplateValidationError, WorkflowError
from .steps import StepKind

logger = get_logger(__name__)


class RollbackStrategy(Enum):
    """How far a rollback may reach after a failure."""

    NONE = "none"
    STEP = "step"
    CHECKPOINT = "checkpoint"
    FULL = "full"


def slugify(name: str) -> str:
    """Registry key for a template name."""
    return re.sub(r"\s+", "_", name.strip().lower())


@dataclass(frozen=True)
class StepSpec:
    """One step of a template: a kind plus the conditions gating it."""

    kind: StepKind | str
    conditions: tuple[Condition, ...] = ()
    step_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "conditions", tuple(self.conditions))
        if not self.step_id:
            kind_value = self.kind.value if isinstance(self.kind, StepKind) else str(self.kind)
            object.__setattr__(self, "step_id", kind_value)

    @property
    def resolved_kind(self) -> StepKind | None:
        return StepKind.resolve(self.kind)

    @property
    def label(self) -> str:
        kind = self.resolved_kind
        return kind.info.label if kind else str(self.kind)

    def to_dict(self) -> dict[str, Any]:
        kind_value = self.kind.value if isinstance(self.kind, StepKind) else str(self.kind)
        data: dict[str, Any] = {
            "id": kind_value,
            "conditions": [c.to_dict() for c in self.conditions],
        }
        if self.step_id != kind_value:
            data["step_id"] = self.step_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StepSpec":
        raw_kind = data["id"]
        kind = StepKind.resolve(raw_kind) or raw_kind
        conditions = tuple(condition_from_dict(c) for c in data.get("conditions") or ())
        return cls(kind=kind, conditions=conditions, step_id=data.get("step_id", ""))


@dataclass(frozen=True)
class WorkflowTemplate:
    """Immutable definition of a workflow."""

    name: str
    steps: tuple[StepSpec, ...]
    rollback_strategy: RollbackStrategy = RollbackStrategy.STEP
    description: str = ""
    key: str = field(default="")

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.key:
            object.__setattr__(self, "key", slugify(self.name))

    @property
    def step_ids(self) -> list[str]:
        return [step.step_id for step in self.steps]

    def index_of(self, step_id: str) -> int:
        """Index of ``step_id`` in the template, or -1."""
        for index, step in enumerate(self.steps):
            if step.step_id == step_id:
                return index
        return -1

    def evolve(self, **changes: Any) -> "WorkflowTemplate":
        """Copy with ``changes`` applied; a new name yields a new key."""
        if "name" in changes and "key" not in changes:
            changes["key"] = slugify(changes["name"])
        return replace(self, **changes)

    def with_step_added(
        self, kind: StepKind | str, conditions: Iterable[Condition] = ()
    ) -> "WorkflowTemplate":
        return replace(self, steps=(*self.steps, StepSpec(kind, tuple(conditions))))

    def with_step_removed(self, index: int) -> "WorkflowTemplate":
        return replace(self, steps=tuple(s for i, s in enumerate(self.steps) if i != index))

    def with_step_moved(self, index: int, offset: int) -> "WorkflowTemplate":
        """Swap the step at ``index`` with its neighbour ``offset`` away."""
        target = index + offset
        if not (0 <= index < len(self.steps) and 0 <= target < len(self.steps)):
            return self
        steps = list(self.steps)
        steps[index], steps[target] = steps[target], steps[index]
        return replace(self, steps=tuple(steps))

    def with_condition_added(self, index: int, condition_type: str) -> "WorkflowTemplate":
        """Attach a condition of ``condition_type`` with editor defaults."""
        if condition_type == PreviousStepSucceeded.type_tag:
            previous = self.steps[index - 1].step_id if index > 0 else None
            condition: Condition = PreviousStepSucceeded(previous)
        else:
            condition = condition_from_dict({"type": condition_type})
        step = self.steps[index]
        updated = replace(step, conditions=(*step.conditions, condition))
        steps = list(self.steps)
        steps[index] = updated
        return replace(self, steps=tuple(steps))

    def structural_problems(self) -> list[str]:
        problems = []
        if not self.name.strip():
            problems.append("template needs a name")
        if not isinstance(self.rollback_strategy, RollbackStrategy):
            problems.append(f"unknown rollback strategy {self.rollback_strategy!r}")
        for index, step in enumerate(self.steps):
            if not isinstance(step, StepSpec):
                problems.append(f"step {index} is not a StepSpec")
                continue
            for condition in step.conditions:
                if not isinstance(condition, Condition):
                    problems.append(f"step '{step.step_id}' has a non-condition gate")
        return problems

    def run_problems(self, available_kinds: Iterable[StepKind]) -> list[str]:
        """Problems that prevent this template from being run."""
        problems = self.structural_problems()
        if problems:
            return problems
        if not self.steps:
            problems.append("template has no steps")

        available = set(available_kinds)
        seen: set[str] = set()
        for index, step in enumerate(self.steps):
            kind = step.resolved_kind
            if kind is None:
                problems.append(f"unknown step kind '{step.kind}'")
            elif kind not in available:
                problems.append(f"no operation registered for step kind '{kind.value}'")
            if step.step_id in seen:
                problems.append(f"duplicate step id '{step.step_id}'")
            seen.add(step.step_id)

            for condition in step.conditions:
                problems.extend(f"step '{step.step_id}': {p}" for p in condition.validate())
                if isinstance(condition, PreviousStepSucceeded) and condition.step_id:
                    target = self.index_of(condition.step_id)
                    if target < 0 or target >= index:
                        problems.append(
                            f"step '{step.step_id}' depends on '{condition.step_id}', "
                            "which does not precede it"
                        )
        return problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "rollbackStrategy": self.rollback_strategy.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowTemplate":
        strategy = data.get("rollbackStrategy", data.get("rollback_strategy", "step"))
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            steps=tuple(StepSpec.from_dict(s) for s in data.get("steps", ())),
            rollback_strategy=RollbackStrategy(strategy),
            key=data.get("key", ""),
        )


def _step(kind: StepKind, *conditions: Condition) -> StepSpec:
    return StepSpec(kind, conditions)


BUILTIN_TEMPLATES: tuple[WorkflowTemplate, ...] = (
    WorkflowTemplate(
        key="quick_fix",
        name="Quick Fix",
        description="Fast path for small bug fixes",
        steps=(
            _step(StepKind.INIT),
            _step(StepKind.GENERATE),
            _step(StepKind.LINT),
            _step(StepKind.TEST, PreviousStepSucceeded("lint")),
            _step(StepKind.COMMIT, PreviousStepSucceeded("test")),
        ),
        rollback_strategy=RollbackStrategy.STEP,
    ),
    WorkflowTemplate(
        key="standard",
        name="Standard Implementation",
        description="Balanced workflow for most tasks",
        steps=(
            _step(StepKind.INIT),
            _step(StepKind.ANALYZE),
            _step(StepKind.GENERATE),
            _step(StepKind.REVIEW),
            _step(StepKind.TEST, ScoreAtLeast(70)),
            _step(StepKind.COMMIT, PreviousStepSucceeded("test")),
        ),
        rollback_strategy=RollbackStrategy.CHECKPOINT,
    ),
    WorkflowTemplate(
        key="thorough",
        name="Thorough Review",
        description="Comprehensive workflow with security checks",
        steps=(
            _step(StepKind.INIT),
            _step(StepKind.ANALYZE),
            _step(StepKind.SECURITY),
            _step(StepKind.GENERATE, SecurityClean()),
            _step(StepKind.REVIEW),
            _step(StepKind.TEST, ScoreAtLeast(80)),
            _step(StepKind.DOCS, PreviousStepSucceeded("test")),
            _step(StepKind.COMMIT),
            _step(StepKind.MERGE, BranchComparison("not_equals", "main")),
        ),
        rollback_strategy=RollbackStrategy.FULL,
    ),
    WorkflowTemplate(
        key="full_deployment",
        name="Full Deployment",
        description="End-to-end from code to production",
        steps=(
            _step(StepKind.INIT),
            _step(StepKind.ANALYZE),
            _step(StepKind.SECURITY),
            _step(StepKind.GENERATE, SecurityClean()),
            _step(StepKind.REVIEW),
            _step(StepKind.TEST, ScoreAtLeast(85)),
            _step(StepKind.LINT),
            _step(StepKind.DOCS),
            _step(StepKind.COMMIT, AllTestsPassed()),
            _step(StepKind.MERGE),
            _step(StepKind.BUILD, PreviousStepSucceeded("merge")),
            _step(StepKind.STAGE, PreviousStepSucceeded("build")),
            _step(StepKind.PRODUCTION, ManualApproval(), ExternalHealthOk(300)),
            _step(StepKind.NOTIFY),
        ),
        rollback_strategy=RollbackStrategy.FULL,
    ),
)


class TemplateRegistry:
    """
    Catalog of built-in and user-authored templates.

    Reads work on an immutable snapshot; writes swap in a new snapshot under a
    lock, so concurrent readers always see a consistent catalog.
    """

    def __init__(self, templates: Iterable[WorkflowTemplate] = BUILTIN_TEMPLATES):
        self._lock = threading.Lock()
        initial = {t.key: t for t in templates}
        self._builtin_keys = frozenset(initial)
        self._templates: Mapping[str, WorkflowTemplate] = MappingProxyType(initial)

    def __contains__(self, name: str) -> bool:
        return self._lookup(name) is not None

    def __len__(self) -> int:
        return len(self._templates)

    def _lookup(self, name: str) -> WorkflowTemplate | None:
        snapshot = self._templates
        if name in snapshot:
            return snapshot[name]
        slug = slugify(name)
        if slug in snapshot:
            return snapshot[slug]
        for template in snapshot.values():
            if template.name == name:
                return template
        return None

    def get(self, name: str) -> WorkflowTemplate:
        """Look up a template by key or display name."""
        template = self._lookup(name)
        if template is None:
            raise TemplateNotFoundError(name)
        return template

    def put(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Insert or replace a template, keyed by its name."""
        problems = template.structural_problems()
        if problems:
            raise TemplateValidationError(template.name, problems)

        with self._lock:
            updated = dict(self._templates)
            replaced = template.key in updated
            updated[template.key] = template
            self._templates = MappingProxyType(updated)

        logger.info(
            f"Template '{template.name}' saved",
            key=template.key,
            steps=len(template.steps),
            replaced=replaced,
        )
        return template

    def remove(self, key: str) -> None:
        """Remove a user-authored template."""
        if key in self._builtin_keys:
            raise WorkflowError(f"Built-in template '{key}' cannot be removed")
        with self._lock:
            if key not in self._templates:
                raise TemplateNotFoundError(key)
            updated = dict(self._templates)
            del updated[key]
            self._templates = MappingProxyType(updated)
        logger.info(f"Template '{key}' removed")

    def is_builtin(self, key: str) -> bool:
        return key in self._builtin_keys

    def list(self) -> list[WorkflowTemplate]:
        """All templates, built-ins first, in insertion order."""
        return list(self._templates.values())
