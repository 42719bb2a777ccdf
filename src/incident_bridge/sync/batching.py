"""Batched, concurrency-bounded, rate-paced execution for bulk syncs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def batch_delay_seconds(batch_len: int, requests_per_minute: int) -> float:
    """Pause that keeps ``batch_len`` requests within the per-minute budget."""
    return batch_len * 60.0 / requests_per_minute


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Any]],
    *,
    batch_size: int,
    concurrency: int,
    requests_per_minute: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "bulk sync",
) -> tuple[list[Any], int]:
    """Run ``worker`` over ``items`` in fixed-size batches.

    Within a batch at most ``concurrency`` workers run at once. Between
    batches (not after the last) the runner sleeps long enough to respect
    ``requests_per_minute``. A worker's exception is captured in place of its
    result, so one bad record never stops the others.

    Returns:
        ``(outcomes, batch_count)`` where ``outcomes`` is aligned with ``items``.
    """
    semaphore = asyncio.Semaphore(concurrency)
    outcomes: list[Any] = []
    batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]

    async def _guarded(item: T) -> Any:
        async with semaphore:
            return await worker(item)

    for number, batch in enumerate(batches, start=1):
        logger.info(
            "Processing %s batch %d/%d",
            label, number, len(batches),
            extra={"batch_size": len(batch)},
        )
        results = await asyncio.gather(*(_guarded(item) for item in batch), return_exceptions=True)
        for result in results:
            # Cancellation and interpreter exits are not per-record failures.
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
        outcomes.extend(results)

        if number < len(batches):
            await sleep(batch_delay_seconds(len(batch), requests_per_minute))

    return outcomes, len(batches)
