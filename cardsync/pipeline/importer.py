"""
Card Catalog Sync — Import Run

One run for one source:
1. Read the import cursor and note the run start time
2. Open the source as a stream of batches: bulk file (cache or download,
   stream-decoded) or paged API (set list, then card pages)
3. Feed the batches to the worker pool
4. Each batch: classify + apply inside one transaction
5. Drain the pool; advance the cursor to the run start time only when no
   batch failed

Any fatal error (download exhausted, stream decode, pool aborted) propagates
and leaves the cursor untouched. A run with failed batches still returns its
ImportResult, but the cursor stays where it was so the rolled-back records
are reconsidered next run.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import NamedTuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import settings
from cardsync.errors import SourceError
from cardsync.pipeline.change_detector import ChangeDetector
from cardsync.pipeline.source_client import PokemonTCGClient, SourceClient, client_for
from cardsync.pipeline.sources import SourceDefinition, build_sources
from cardsync.pipeline.store import CatalogStore, ImportCursorStore
from cardsync.pipeline.upserter import Upserter
from cardsync.pipeline.worker_pool import Batch, BatchOutcome, WorkerPool

logger = structlog.get_logger(__name__)


class ImportResult(NamedTuple):
    """Summary of one completed import run."""
    total: int
    created: int
    updated: int
    healed: int
    skipped: int
    errors: list[str]

    @property
    def processed(self) -> int:
        """Records that reached a create/update/heal/skip decision."""
        return self.created + self.updated + self.healed + self.skipped


def make_batch_processor(
    session_factory: async_sessionmaker[AsyncSession],
    source: SourceDefinition,
    cursor: datetime | None,
    store: CatalogStore | None = None,
):
    """
    Build the per-batch callable run by pool workers.

    Each call holds one session and one transaction; an exception rolls the
    whole batch back and propagates to the pool.
    """
    store = store or CatalogStore()
    detector = ChangeDetector(store, source.parse_record)
    upserter = Upserter(store)

    async def process_batch(batch: Batch) -> BatchOutcome:
        async with session_factory() as session:
            async with session.begin():
                plan = await detector.classify(session, batch, cursor)
                counts = await upserter.apply(session, plan)

        return BatchOutcome(
            created=counts.created,
            updated=counts.updated,
            healed=counts.healed,
            skipped=plan.skipped,
            processed=plan.processed,
            errors=tuple(plan.errors),
        )

    return process_batch


async def run_import(
    source_id: str,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    batch_size: int | None = None,
    workers: int | None = None,
    queue_size: int | None = None,
    max_consecutive_failures: int | None = None,
    use_cache: bool = True,
    client: SourceClient | PokemonTCGClient | None = None,
    sources: dict[str, SourceDefinition] | None = None,
) -> ImportResult:
    """
    Run one full import for `source_id`.

    Args:
        source_id: Key of an enabled source ("mtg", "pokemon").
        session_factory: Async session factory bound to the catalog database.
        batch_size: Records per batch (default IMPORT_BATCH_SIZE).
        workers: Concurrent batch workers (default IMPORT_WORKERS).
        queue_size: Bounded queue capacity (default IMPORT_QUEUE_SIZE).
        max_consecutive_failures: Pool abort threshold, 0 disables.
        use_cache: Reuse a fresh cached dataset file when available.
        client: An already-open source client; one matching the source's
            transport is created when omitted.
        sources: Source registry override (default: build_sources()).

    Returns:
        ImportResult with per-run counts and per-record / per-batch errors.
        The cursor only advances when no batch failed.

    Raises:
        SourceError, DownloadExhaustedError, StreamDecodeError, WorkerPoolAborted
    """
    sources = sources if sources is not None else build_sources()
    if source_id not in sources:
        raise SourceError(f"unknown or disabled source {source_id!r}; enabled: {sorted(sources)}")

    batch_size = batch_size if batch_size is not None else settings.IMPORT_BATCH_SIZE
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    source = sources[source_id]
    if client is None:
        async with client_for(source, sources, use_cache=use_cache) as owned:
            return await _run(
                owned, source, session_factory,
                batch_size, workers, queue_size, max_consecutive_failures,
            )
    return await _run(
        client, source, session_factory,
        batch_size, workers, queue_size, max_consecutive_failures,
    )


async def _run(
    client: SourceClient | PokemonTCGClient,
    source: SourceDefinition,
    session_factory: async_sessionmaker[AsyncSession],
    batch_size: int,
    workers: int | None,
    queue_size: int | None,
    max_consecutive_failures: int | None,
) -> ImportResult:
    run_started_at = datetime.now(timezone.utc)
    started = time.monotonic()

    cursor_store = ImportCursorStore(session_factory)
    cursor = await cursor_store.get(source.source_id)

    logger.info(
        "import_run_start",
        source_id=source.source_id,
        game=source.game.value,
        kind=source.kind.value,
        cursor=cursor.isoformat() if cursor else None,
        batch_size=batch_size,
    )

    total = 0
    download_seconds = 0.0
    process_started = started
    pool = WorkerPool(
        make_batch_processor(session_factory, source, cursor),
        workers=workers,
        queue_size=queue_size,
        max_consecutive_failures=max_consecutive_failures,
    )

    async with pool:
        async with client.open_batches(source.source_id, batch_size) as batches:
            download_seconds = time.monotonic() - started
            process_started = time.monotonic()
            async for batch in batches:
                total += len(batch)
                await pool.submit(batch)
        stats = await pool.drain()

    if stats.batches_failed:
        logger.warning(
            "import_cursor_not_advanced",
            source_id=source.source_id,
            failed_batches=stats.batches_failed,
            cursor=cursor.isoformat() if cursor else None,
        )
    else:
        await cursor_store.set(source.source_id, run_started_at)

    process_seconds = time.monotonic() - process_started
    total_seconds = time.monotonic() - started
    result = ImportResult(
        total=total,
        created=stats.created,
        updated=stats.updated,
        healed=stats.healed,
        skipped=stats.skipped,
        errors=list(stats.errors),
    )

    logger.info(
        "import_run_complete",
        source_id=source.source_id,
        total=result.total,
        created=result.created,
        updated=result.updated,
        healed=result.healed,
        skipped=result.skipped,
        errors=len(result.errors),
        batches=stats.batches_done,
        failed_batches=stats.batches_failed,
        download_seconds=round(download_seconds, 2),
        process_seconds=round(process_seconds, 2),
        total_seconds=round(total_seconds, 2),
        records_per_second=round(total / process_seconds, 1) if process_seconds > 0 else None,
    )
    return result
