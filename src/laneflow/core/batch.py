"""
Bounded-concurrency helper for independent tasks.

Items are processed in fixed windows: every item in a window is started
together and the next window begins only once the whole current one has
settled. A failing item never cancels its siblings.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

from ..observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class BatchItemResult(Generic[T, R]):
    """Outcome of one item: its result or the exception it raised."""

    item: T
    result: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_in_batches(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int = 3,
) -> list[BatchItemResult[T, R]]:
    """Run ``worker`` over ``items`` in windows of ``batch_size``.

    Results come back in input order.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    pending = list(items)
    results: list[BatchItemResult[T, R]] = []

    for start in range(0, len(pending), batch_size):
        window = pending[start : start + batch_size]
        logger.debug(
            f"Starting batch {start // batch_size + 1}", size=len(window), total=len(pending)
        )
        outcomes = await asyncio.gather(*(worker(item) for item in window), return_exceptions=True)

        for item, outcome in zip(window, outcomes, strict=True):
            if isinstance(outcome, Exception):
                logger.error(f"Batch item failed: {outcome}", item=repr(item))
                results.append(BatchItemResult(item, error=outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(BatchItemResult(item, result=outcome))

    return results
