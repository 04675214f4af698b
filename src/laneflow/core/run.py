"""
State of a single workflow run.

A `WorkflowRun` is owned by exactly one orchestrator. Everything here is plain
data; the orchestrator is the only writer.
"""

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .context import ExecutionContext
from .events import LogLine
from .state_machine import RunState, RunStateMachine
from .steps import StepKind, StepStatus
from .templates import WorkflowTemplate


@dataclass
class StepRuntimeState:
    """Per-run status of one template step."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    output: str | None = None
    error: str | None = None
    elapsed_ms: int | None = None
    reason: str | None = None
    approved: bool = False
    attempts: int = 0

    def clear(self) -> None:
        self.status = StepStatus.PENDING
        self.output = None
        self.error = None
        self.elapsed_ms = None
        self.reason = None
        self.approved = False


@dataclass(frozen=True)
class StepHistoryEntry:
    """A completed step and the context as it stood right after it."""

    step_id: str
    kind: StepKind
    index: int
    status: StepStatus
    context: ExecutionContext
    timestamp: float = field(default_factory=time.time)

    @property
    def time_label(self) -> str:
        return datetime.fromtimestamp(self.timestamp).strftime("%H:%M:%S")

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "kind": self.kind.value,
            "index": self.index,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "context": self.context.to_dict(),
        }


def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


@dataclass
class WorkflowRun:
    template: WorkflowTemplate | None
    run_id: str = field(default_factory=_new_run_id)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    initial_context: ExecutionContext = field(default_factory=ExecutionContext)
    cursor: int | None = None
    step_states: dict[str, StepRuntimeState] = field(default_factory=dict)
    history: list[StepHistoryEntry] = field(default_factory=list)
    logs: deque[LogLine] = field(default_factory=lambda: deque(maxlen=50))
    state_machine: RunStateMachine = field(default_factory=RunStateMachine)
    started_at: float | None = None
    finished_at: float | None = None
    # Index of an in-flight step whose result must be discarded
    pending_skip: int | None = None

    @classmethod
    def idle(cls, log_buffer_size: int = 50) -> "WorkflowRun":
        return cls(template=None, logs=deque(maxlen=log_buffer_size))

    @classmethod
    def start(
        cls,
        template: WorkflowTemplate,
        context: ExecutionContext,
        log_buffer_size: int = 50,
    ) -> "WorkflowRun":
        return cls(
            template=template,
            context=context,
            initial_context=context.snapshot(),
            cursor=0,
            step_states={s.step_id: StepRuntimeState(s.step_id) for s in template.steps},
            logs=deque(maxlen=log_buffer_size),
            started_at=time.time(),
        )

    @property
    def state(self) -> RunState:
        return self.state_machine.state

    @property
    def current_step_id(self) -> str | None:
        if self.template is None or self.cursor is None:
            return None
        if self.cursor >= len(self.template.steps):
            return None
        return self.template.steps[self.cursor].step_id

    def statuses(self) -> dict[str, StepStatus]:
        return {step_id: s.status for step_id, s in self.step_states.items()}

    def status_of(self, step_id: str) -> StepStatus | None:
        state = self.step_states.get(step_id)
        return state.status if state else None

    def checkpoints(self) -> list[StepHistoryEntry]:
        """History entries whose step is still completed, in completion order."""
        return [
            entry
            for entry in self.history
            if self.status_of(entry.step_id) is StepStatus.COMPLETED
        ]

    def count(self, status: StepStatus) -> int:
        return sum(1 for s in self.step_states.values() if s.status is status)

    @property
    def progress(self) -> float:
        """Share of steps that are done, as a percentage."""
        if not self.step_states:
            return 0.0
        done = sum(
            1
            for s in self.step_states.values()
            if s.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
        )
        return done / len(self.step_states) * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "template": self.template.to_dict() if self.template else None,
            "state": self.state.value,
            "cursor": self.cursor,
            "context": self.context.to_dict(),
            "steps": [
                {
                    "step_id": s.step_id,
                    "status": s.status.value,
                    "output": s.output,
                    "error": s.error,
                    "elapsed_ms": s.elapsed_ms,
                    "reason": s.reason,
                    "attempts": s.attempts,
                }
                for s in self.step_states.values()
            ],
            "history": [entry.to_dict() for entry in self.history],
            "transitions": [
                {"from": prev.value, "to": cur.value, "event": event, "timestamp": ts}
                for prev, cur, event, ts in self.state_machine.history
            ],
            "logs": [
                {"time": line.time_label, "level": line.level.value, "message": line.message}
                for line in self.logs
            ],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
