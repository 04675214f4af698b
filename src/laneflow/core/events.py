"""
Outbound event stream of the orchestrator.

Rendering layers subscribe to the bus; the orchestrator never depends on them.
Events are delivered synchronously and in order on the orchestrator's event
loop.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..observability.logging import get_logger
from .state_machine import RunState
from .steps import StepStatus

logger = get_logger(__name__)


class LogLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class WorkflowEvent:
    """Marker base for everything published on the event bus."""

    run_id: str


@dataclass(frozen=True)
class StepStatusChanged(WorkflowEvent):
    run_id: str
    step_id: str
    index: int
    status: StepStatus
    output: str | None = None
    error: str | None = None
    elapsed_ms: int | None = None
    reason: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class LogLine(WorkflowEvent):
    run_id: str
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: float = field(default_factory=time.time)

    @property
    def time_label(self) -> str:
        return datetime.fromtimestamp(self.timestamp).strftime("%H:%M:%S")


@dataclass(frozen=True)
class RunStateChanged(WorkflowEvent):
    run_id: str
    previous: RunState
    current: RunState
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RollbackAvailable(WorkflowEvent):
    run_id: str
    strategy: str
    targets: tuple[str, ...]
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RunFinished(WorkflowEvent):
    run_id: str
    template: str
    state: RunState
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[WorkflowEvent], None]


class EventBus:
    """Synchronous publish/subscribe for workflow events."""

    def __init__(self):
        self._subscribers: list[tuple[EventHandler, type[WorkflowEvent] | None]] = []

    def subscribe(
        self, handler: EventHandler, event_type: type[WorkflowEvent] | None = None
    ) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unsubscribes it."""
        entry = (handler, event_type)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: WorkflowEvent) -> None:
        for handler, event_type in list(self._subscribers):
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                handler(event)
            except Exception as e:
                # A broken subscriber must not stall the run
                logger.error(
                    f"Event handler failed on {type(event).__name__}: {e}",
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )
