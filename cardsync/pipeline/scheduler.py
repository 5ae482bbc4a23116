"""
Card Catalog Sync — Import Scheduler

Runs every owned source once immediately on start, then once per interval
(default IMPORT_INTERVAL_HOURS = 24). Sources run one after another inside a
tick; a failing source is logged and the next one proceeds, and its cursor
is not advanced.

stop() sets the shutdown event, checked between ticks. A run already in
flight finishes before the loop exits.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import settings
from cardsync.pipeline.importer import ImportResult, run_import
from cardsync.pipeline.sources import build_sources

logger = structlog.get_logger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class CatalogScheduler:
    """
    Periodic driver for import runs.

    Args:
        sources: Source ids to run each tick, in order.
        run_source: Coroutine function running one import for a source id.
        interval: Wait between ticks.
    """

    def __init__(
        self,
        sources: Iterable[str],
        run_source: Callable[[str], Awaitable[ImportResult]],
        interval: timedelta | None = None,
    ):
        self.sources = list(sources)
        self.run_source = run_source
        self.interval = interval or timedelta(hours=settings.IMPORT_INTERVAL_HOURS)
        self.state = SchedulerState.IDLE
        self._shutdown_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Spawn the loop task. The first tick runs immediately."""
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(f"scheduler cannot start from state {self.state.value}")
        self.state = SchedulerState.RUNNING
        self._task = asyncio.create_task(self._loop(), name="catalog-scheduler")
        logger.info(
            "scheduler_started",
            sources=self.sources,
            interval_hours=self.interval.total_seconds() / 3600,
        )

    def stop(self) -> None:
        """Request shutdown; the loop exits after the in-flight tick."""
        if self.state is SchedulerState.STOPPED:
            return
        logger.info("scheduler_shutdown_requested", state=self.state.value)
        self.state = SchedulerState.STOPPED
        self._shutdown_event.set()

    async def wait_stopped(self, timeout: float | None = None) -> None:
        """Wait for the loop task to exit."""
        if self._task is None:
            return
        await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)

    async def tick(self) -> dict[str, ImportResult | None]:
        """
        Run every source once. A failed source maps to None.
        """
        results: dict[str, ImportResult | None] = {}
        for source_id in self.sources:
            if self._shutdown_event.is_set():
                logger.info("scheduler_tick_interrupted", remaining_source=source_id)
                break
            try:
                result = await self.run_source(source_id)
            except Exception as e:
                logger.error(
                    "scheduler_source_failed",
                    source_id=source_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                results[source_id] = None
                continue

            results[source_id] = result
            logger.info(
                "scheduler_source_complete",
                source_id=source_id,
                total=result.total,
                created=result.created,
                updated=result.updated,
                skipped=result.skipped,
                errors=len(result.errors),
            )
        return results

    async def _loop(self) -> None:
        try:
            while not self._shutdown_event.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.interval.total_seconds(),
                    )
                except asyncio.TimeoutError:
                    # No shutdown signal: next tick
                    continue
        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            raise
        finally:
            self.state = SchedulerState.STOPPED
            logger.info("scheduler_stopped")


async def run_scheduler(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """
    Build a scheduler over all enabled sources and run it until SIGTERM/SIGINT.

    Args:
        session_factory: SQLAlchemy async session factory.
    """
    sources = build_sources()

    async def run_source(source_id: str) -> ImportResult:
        return await run_import(source_id, session_factory, sources=sources)

    scheduler = CatalogScheduler(sources.keys(), run_source)

    def handle_signal(signum: int) -> None:
        logger.info("scheduler_signal_received", signal=signal.Signals(signum).name)
        scheduler.stop()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM)
        loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler for all signals
        logger.warning("signal_handlers_not_supported_on_platform")

    scheduler.start()
    try:
        await scheduler.wait_stopped()
    except Exception as e:
        logger.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
