"""Tests for the batched bulk runner."""

import asyncio

import pytest

from incident_bridge.models.enums import SyncAction
from incident_bridge.models.results import BulkSyncResult, SyncOutcome
from incident_bridge.sync.batching import batch_delay_seconds, run_in_batches


async def test_batches_concurrency_and_pacing(sleeps):
    in_flight = 0
    peak = 0

    async def worker(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        if item == 13:
            raise ValueError("bad record")
        return item * 2

    outcomes, batches = await run_in_batches(
        list(range(25)),
        worker,
        batch_size=10,
        concurrency=5,
        requests_per_minute=120,
        sleep=sleeps,
    )

    assert batches == 3
    assert len(outcomes) == 25
    assert outcomes[0] == 0
    assert isinstance(outcomes[13], ValueError)
    assert outcomes[24] == 48
    assert peak <= 5
    assert sleeps.calls == [5.0, 5.0]


async def test_empty_input(sleeps):
    outcomes, batches = await run_in_batches(
        [], lambda item: item, batch_size=10, concurrency=5, requests_per_minute=60, sleep=sleeps
    )
    assert outcomes == []
    assert batches == 0


@pytest.mark.parametrize(("size", "rpm", "expected"), [(10, 60, 10.0), (5, 300, 1.0)])
def test_batch_delay(size, rpm, expected):
    assert batch_delay_seconds(size, rpm) == expected


def test_result_counts():
    result = BulkSyncResult(total=5)
    for action in (SyncAction.CREATED, SyncAction.UPDATED, SyncAction.NOOP, SyncAction.SUPPRESSED):
        result.record(SyncOutcome(action=action))
    result.record(RuntimeError("boom"))

    assert (result.created, result.updated, result.successful) == (1, 1, 3)
    assert (result.skipped, result.failed) == (1, 1)
