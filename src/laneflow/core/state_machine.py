"""
Run-level state machine.

Improvements over ad-hoc status flags:
- Explicit transition table keyed by (state, event)
- Transition history for audit snapshots
- Invalid transitions raise instead of silently corrupting the run
"""

import time
from dataclasses import dataclass
from enum import Enum

from ..observability.logging import get_logger
from .errors import RunStateError

logger = get_logger(__name__)


class RunState(Enum):
    """Lifecycle states of a workflow run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (RunState.RUNNING, RunState.PAUSED, RunState.AWAITING_APPROVAL)

    @property
    def is_finished(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED)


@dataclass(frozen=True)
class Transition:
    """State transition triggered by a named event."""

    from_state: RunState
    to_state: RunState
    event: str


TRANSITIONS: tuple[Transition, ...] = (
    Transition(RunState.IDLE, RunState.RUNNING, "start"),
    Transition(RunState.RUNNING, RunState.PAUSED, "pause"),
    Transition(RunState.PAUSED, RunState.RUNNING, "resume"),
    Transition(RunState.RUNNING, RunState.AWAITING_APPROVAL, "wait"),
    Transition(RunState.AWAITING_APPROVAL, RunState.RUNNING, "approve"),
    Transition(RunState.AWAITING_APPROVAL, RunState.RUNNING, "skip_waiting"),
    Transition(RunState.RUNNING, RunState.COMPLETED, "complete"),
    Transition(RunState.PAUSED, RunState.COMPLETED, "complete"),
    Transition(RunState.RUNNING, RunState.FAILED, "fail"),
    Transition(RunState.PAUSED, RunState.FAILED, "fail"),
    Transition(RunState.FAILED, RunState.RUNNING, "retry"),
)


class RunStateMachine:
    """Tracks one run's lifecycle state and its transition history."""

    def __init__(self, transitions: tuple[Transition, ...] = TRANSITIONS):
        self._table = {(t.from_state, t.event): t for t in transitions}
        self.state = RunState.IDLE
        self.history: list[tuple[RunState, RunState, str, float]] = []

    def can(self, event: str) -> bool:
        """Check whether ``event`` is allowed from the current state."""
        return (self.state, event) in self._table

    def fire(self, event: str) -> tuple[RunState, RunState]:
        """Apply ``event`` and return (previous, current) states."""
        transition = self._table.get((self.state, event))
        if transition is None:
            raise RunStateError(f"Cannot '{event}' while run is {self.state.value}")

        previous = self.state
        self.state = transition.to_state
        self.history.append((previous, self.state, event, time.time()))
        logger.debug(f"Run state {previous.value} -> {self.state.value} on '{event}'")
        return previous, self.state
