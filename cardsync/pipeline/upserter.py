"""
Card Catalog Sync — Upserter

Applies one BatchPlan on the caller's session. The caller wraps classify +
apply in a single transaction, so a batch commits or rolls back whole and
lock scope stays bounded to one batch rather than the full dataset.

Write order: base creates, extension creates (new + self-heal), base
updates, extension updates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import NamedTuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.pipeline.change_detector import BatchPlan
from cardsync.pipeline.store import CatalogStore

logger = structlog.get_logger(__name__)


class UpsertCounts(NamedTuple):
    created: int
    updated: int
    healed: int


class Upserter:
    """Writes a BatchPlan through the CatalogStore."""

    def __init__(self, store: CatalogStore):
        self.store = store

    async def apply(self, session: AsyncSession, plan: BatchPlan) -> UpsertCounts:
        if not plan.has_writes:
            return UpsertCounts(0, 0, 0)

        now = datetime.now(timezone.utc)

        created = await self.store.create_cards(session, plan.to_create, now)
        await self.store.create_extensions(
            session, plan.to_create + plan.extensions_to_create, now
        )
        updated = await self.store.update_cards(session, plan.to_update, now)
        await self.store.update_extensions(session, plan.to_update, now)

        logger.debug(
            "upserter_batch_applied",
            created=created,
            updated=updated,
            healed=len(plan.extensions_to_create),
        )
        return UpsertCounts(created, updated, len(plan.extensions_to_create))
