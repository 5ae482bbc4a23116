"""
Card Catalog Sync — Worker Pool

N worker tasks consume batches from a bounded asyncio.Queue. The producer
blocks on `submit` while the queue is full, so at most queue_size + workers
batches are outstanding at any moment: memory follows database throughput.

A failing batch is recorded and the pool keeps going. After
`max_consecutive_failures` failures in a row the pool trips: remaining
batches are discarded and `drain()` raises WorkerPoolAborted.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, NamedTuple

import structlog

from cardsync.config import settings
from cardsync.errors import WorkerPoolAborted

logger = structlog.get_logger(__name__)

Batch = list[dict[str, Any]]

_STOP = object()


class BatchOutcome(NamedTuple):
    """What a worker reports for one committed batch."""
    created: int = 0
    updated: int = 0
    healed: int = 0
    skipped: int = 0
    processed: int = 0
    errors: tuple[str, ...] = ()


class PoolStats:
    """Aggregated progress across all workers."""

    def __init__(self) -> None:
        self.batches_submitted = 0
        self.batches_done = 0
        self.batches_failed = 0
        self.created = 0
        self.updated = 0
        self.healed = 0
        self.skipped = 0
        self.processed = 0
        self.errors: list[str] = []
        self.max_outstanding = 0

    @property
    def outstanding(self) -> int:
        return self.batches_submitted - self.batches_done - self.batches_failed

    def fold(self, outcome: BatchOutcome) -> None:
        self.batches_done += 1
        self.created += outcome.created
        self.updated += outcome.updated
        self.healed += outcome.healed
        self.skipped += outcome.skipped
        self.processed += outcome.processed
        self.errors.extend(outcome.errors)

    def __repr__(self) -> str:
        return (
            f"<PoolStats done={self.batches_done} failed={self.batches_failed} "
            f"created={self.created} updated={self.updated} skipped={self.skipped}>"
        )


class WorkerPool:
    """
    Fixed-size pool of batch workers fed from a bounded queue.

    Usage:
        async with WorkerPool(process_batch, workers=8, queue_size=16) as pool:
            for batch in batches:
                await pool.submit(batch)
            stats = await pool.drain()
    """

    def __init__(
        self,
        process_batch: Callable[[Batch], Awaitable[BatchOutcome]],
        workers: int | None = None,
        queue_size: int | None = None,
        max_consecutive_failures: int | None = None,
        progress_every: int | None = None,
    ):
        self.process_batch = process_batch
        self.workers = workers if workers is not None else settings.IMPORT_WORKERS
        self.queue_size = queue_size if queue_size is not None else settings.IMPORT_QUEUE_SIZE
        self.max_consecutive_failures = (
            max_consecutive_failures
            if max_consecutive_failures is not None
            else settings.IMPORT_MAX_CONSECUTIVE_FAILURES
        )
        self.progress_every = progress_every or settings.IMPORT_PROGRESS_EVERY_BATCHES

        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")

        self.stats = PoolStats()
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        self._tasks: list[asyncio.Task[None]] = []
        self._consecutive_failures = 0
        self._aborted: WorkerPoolAborted | None = None
        self._started_at = 0.0

    async def __aenter__(self) -> WorkerPool:
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, *args: Any) -> None:
        if self._tasks:
            await self.close()

    @property
    def aborted(self) -> bool:
        return self._aborted is not None

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("worker pool already started")
        self._started_at = time.monotonic()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"batch-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("worker_pool_started", workers=self.workers, queue_size=self.queue_size)

    async def submit(self, batch: Batch) -> None:
        """
        Queue one batch, blocking while the queue is full.

        Raises:
            WorkerPoolAborted: The pool has tripped its failure threshold.
        """
        if self._aborted is not None:
            raise self._aborted
        if not self._tasks:
            raise RuntimeError("worker pool not started")

        seq = self.stats.batches_submitted + 1
        await self._queue.put((seq, batch))
        self.stats.batches_submitted = seq
        self.stats.max_outstanding = max(self.stats.max_outstanding, self.stats.outstanding)

    async def drain(self) -> PoolStats:
        """
        Signal end of input, wait for every worker to finish, return stats.

        Raises:
            WorkerPoolAborted: The pool tripped during the run.
        """
        for _ in self._tasks:
            await self._queue.put(_STOP)
        await asyncio.gather(*self._tasks)
        self._tasks = []

        logger.info(
            "worker_pool_drained",
            batches=self.stats.batches_done,
            failed_batches=self.stats.batches_failed,
            created=self.stats.created,
            updated=self.stats.updated,
            healed=self.stats.healed,
            skipped=self.stats.skipped,
            duration_seconds=round(time.monotonic() - self._started_at, 2),
        )
        if self._aborted is not None:
            raise self._aborted
        return self.stats

    async def close(self) -> None:
        """Cancel workers without draining (error path)."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _worker(self, worker_id: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                seq, batch = item
                if self._aborted is not None:
                    # Discard: the run has already failed.
                    self.stats.batches_failed += 1
                    continue
                await self._run_one(worker_id, seq, batch)
            finally:
                self._queue.task_done()

    async def _run_one(self, worker_id: int, seq: int, batch: Batch) -> None:
        try:
            outcome = await self.process_batch(batch)
        except Exception as e:
            self.stats.batches_failed += 1
            self._consecutive_failures += 1
            message = f"batch {seq} ({len(batch)} records) failed: {type(e).__name__}: {e}"
            self.stats.errors.append(message)
            logger.error(
                "worker_pool_batch_failed",
                worker=worker_id,
                batch=seq,
                records=len(batch),
                error=str(e),
                error_type=type(e).__name__,
                consecutive_failures=self._consecutive_failures,
            )
            if (
                self.max_consecutive_failures > 0
                and self._consecutive_failures >= self.max_consecutive_failures
                and self._aborted is None
            ):
                self._aborted = WorkerPoolAborted(
                    f"{self._consecutive_failures} consecutive batch failures; last: {message}"
                )
                logger.error("worker_pool_aborted", consecutive_failures=self._consecutive_failures)
            return

        self._consecutive_failures = 0
        self.stats.fold(outcome)

        finished = self.stats.batches_done + self.stats.batches_failed
        if finished % self.progress_every == 0:
            logger.info(
                "worker_pool_progress",
                batches_finished=finished,
                batches_submitted=self.stats.batches_submitted,
                created=self.stats.created,
                updated=self.stats.updated,
            )
