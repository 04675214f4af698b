"""
Structured logging for laneflow with run ID support.
"""

import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime

# Context variable for run ID propagation
run_id_ctx: ContextVar[str | None] = ContextVar("run_id", default=None)

# Global logger cache
_loggers: dict[str, "StructuredLogger"] = {}

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
    }
)


class StructuredFormatter(logging.Formatter):
    """Formatter for single-line structured logs with run ID support."""

    def format(self, record: logging.LogRecord) -> str:
        run_id = run_id_ctx.get() or getattr(record, "run_id", None) or "-"

        parts = record.name.split(".")
        mod = parts[-1] if parts else record.name
        op = getattr(record, "op", getattr(record, "funcName", "-"))

        duration = getattr(record, "ms", None)
        ms_part = f" ms={duration:.1f}" if duration is not None else ""

        timestamp = datetime.now(UTC).isoformat()
        msg = record.getMessage()

        extra_fields = ""
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in {"run_id", "op", "ms"}:
                continue
            extra_fields += f" {key}={value}"

        return (
            f"t={timestamp} level={record.levelname} run={run_id} mod={mod} op={op}"
            f'{ms_part} msg="{msg}"{extra_fields}'
        )


class StructuredLogger:
    """Structured logger with run ID and operation support."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, **kwargs):
        # LogRecord refuses extras that shadow its own attributes
        extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_ATTRS}
        extra["run_id"] = run_id_ctx.get()
        self.logger.log(level, msg, extra=extra)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, **kwargs)

    def critical(self, msg: str, **kwargs):
        self._log(logging.CRITICAL, msg, **kwargs)

    def timed(self, msg: str, duration_ms: float, **kwargs):
        """Log with timing information."""
        kwargs["ms"] = duration_ms
        self.info(msg, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration with structured formatter."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


def set_run_id(run_id: str | None) -> None:
    """Set run ID in current context."""
    run_id_ctx.set(run_id)


def get_run_id() -> str | None:
    """Get current run ID from context."""
    return run_id_ctx.get()


def clear_run_id() -> None:
    """Clear run ID from current context."""
    run_id_ctx.set(None)
