"""
Tests for the batch worker pool (cardsync/pipeline/worker_pool.py).

Covers:
- Outcomes from all workers are aggregated
- Backpressure: outstanding batches never exceed queue_size + workers
- A failing batch is recorded and the pool continues
- Consecutive failures past the threshold abort the run
"""

from __future__ import annotations

import asyncio

import pytest

from cardsync.errors import WorkerPoolAborted
from cardsync.pipeline.worker_pool import BatchOutcome, WorkerPool


async def _ok(batch) -> BatchOutcome:
    await asyncio.sleep(0)
    return BatchOutcome(created=len(batch), processed=len(batch))


# ---------------------------------------------------------------------------
# Test 1: Aggregation across workers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pool_aggregates_outcomes() -> None:
    async with WorkerPool(_ok, workers=4, queue_size=2) as pool:
        for i in range(10):
            await pool.submit([{"n": j} for j in range(i + 1)])
        stats = await pool.drain()

    assert stats.batches_submitted == 10
    assert stats.batches_done == 10
    assert stats.batches_failed == 0
    assert stats.created == sum(range(1, 11))
    assert stats.processed == stats.created


@pytest.mark.asyncio
async def test_pool_collects_record_errors() -> None:
    async def with_errors(batch) -> BatchOutcome:
        return BatchOutcome(skipped=1, processed=1, errors=(f"bad record in {batch[0]['n']}",))

    async with WorkerPool(with_errors, workers=2, queue_size=2) as pool:
        await pool.submit([{"n": 1}])
        await pool.submit([{"n": 2}])
        stats = await pool.drain()

    assert sorted(stats.errors) == ["bad record in 1", "bad record in 2"]
    assert stats.skipped == 2


@pytest.mark.asyncio
async def test_default_outcome_errors_are_immutable() -> None:
    first = BatchOutcome()

    assert first.errors == ()
    assert isinstance(first.errors, tuple)

    async with WorkerPool(_ok, workers=1, queue_size=1) as pool:
        await pool.submit([{"n": 1}])
        stats = await pool.drain()

    stats.errors.append("late note")
    assert BatchOutcome().errors == ()


# ---------------------------------------------------------------------------
# Test 2: Backpressure bound
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_backpressure_bounds_outstanding_batches() -> None:
    workers, queue_size = 3, 4
    release = asyncio.Event()
    in_flight = 0
    peak_in_flight = 0

    async def slow(batch) -> BatchOutcome:
        nonlocal in_flight, peak_in_flight
        in_flight += 1
        peak_in_flight = max(peak_in_flight, in_flight)
        await release.wait()
        in_flight -= 1
        return BatchOutcome(processed=len(batch))

    pool = WorkerPool(slow, workers=workers, queue_size=queue_size)
    pool.start()

    async def produce() -> None:
        for i in range(50):
            await pool.submit([{"n": i}])

    producer = asyncio.create_task(produce())
    await asyncio.sleep(0.05)

    # Workers are all blocked: the producer must be stuck on a full queue
    assert not producer.done()
    assert pool.stats.batches_submitted <= queue_size + workers
    assert pool.stats.outstanding <= queue_size + workers

    release.set()
    await producer
    stats = await pool.drain()

    assert stats.batches_done == 50
    assert stats.max_outstanding <= queue_size + workers
    assert peak_in_flight <= workers


# ---------------------------------------------------------------------------
# Test 3: Batch failures are isolated
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_batch_does_not_stop_pool() -> None:
    async def flaky(batch) -> BatchOutcome:
        if batch[0]["n"] % 3 == 0:
            raise RuntimeError("deadlock detected")
        return BatchOutcome(created=1, processed=1)

    async with WorkerPool(flaky, workers=2, queue_size=2, max_consecutive_failures=5) as pool:
        for i in range(9):
            await pool.submit([{"n": i}])
        stats = await pool.drain()

    assert stats.batches_failed == 3
    assert stats.batches_done == 6
    assert stats.created == 6
    assert len(stats.errors) == 3
    assert all("deadlock detected" in e for e in stats.errors)


# ---------------------------------------------------------------------------
# Test 4: Consecutive failures abort the run
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_consecutive_failures_abort() -> None:
    async def broken(batch) -> BatchOutcome:
        raise ConnectionError("database unreachable")

    pool = WorkerPool(broken, workers=1, queue_size=1, max_consecutive_failures=3)
    with pytest.raises(WorkerPoolAborted, match="3 consecutive batch failures"):
        async with pool:
            for i in range(20):
                await pool.submit([{"n": i}])
            await pool.drain()

    assert pool.aborted
    assert pool.stats.batches_done == 0


@pytest.mark.asyncio
async def test_threshold_zero_never_aborts() -> None:
    async def broken(batch) -> BatchOutcome:
        raise ConnectionError("database unreachable")

    async with WorkerPool(broken, workers=2, queue_size=2, max_consecutive_failures=0) as pool:
        for i in range(12):
            await pool.submit([{"n": i}])
        stats = await pool.drain()

    assert stats.batches_failed == 12
    assert not pool.aborted


def test_invalid_sizes() -> None:
    with pytest.raises(ValueError):
        WorkerPool(_ok, workers=0, queue_size=1)
    with pytest.raises(ValueError):
        WorkerPool(_ok, workers=1, queue_size=0)
