"""
Card Catalog Sync — Change Detector

Classifies one batch of raw source records into creates, updates,
self-heal extension creates, and skips.

Per record:
1. Normalize; invalid records (bad shape, missing set code / number,
   unparseable updated_at) are recorded as errors and skipped.
2. Provider updated_at not after the cursor → skip (incremental import).
3. Duplicate natural keys in one batch → last occurrence wins.
4. One query loads all stored cards + extension rows for the batch.
5. No stored card → create. Stored card without extension → create the
   extension only (self-heal). Otherwise signatures decide update vs skip.

A lookup failure propagates: the caller's transaction rolls the batch back.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, NamedTuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.errors import RecordValidationError
from cardsync.pipeline.records import IncomingCard
from cardsync.pipeline.signature import compute_signature
from cardsync.pipeline.store import CardWrite, CatalogStore, incoming_from_rows

logger = structlog.get_logger(__name__)


class BatchPlan(NamedTuple):
    """What one batch needs written. Skipped records are only counted."""
    to_create: list[CardWrite]
    to_update: list[CardWrite]
    extensions_to_create: list[CardWrite]
    skipped: int
    errors: list[str]

    @property
    def processed(self) -> int:
        """Records that passed validation, whatever their outcome."""
        return (
            len(self.to_create)
            + len(self.to_update)
            + len(self.extensions_to_create)
            + self.skipped
        )

    @property
    def has_writes(self) -> bool:
        return bool(self.to_create or self.to_update or self.extensions_to_create)


class ChangeDetector:
    """Builds a BatchPlan for one batch against the stored catalog."""

    def __init__(
        self,
        store: CatalogStore,
        parse_record: Callable[[dict[str, Any]], IncomingCard],
    ):
        self.store = store
        self.parse_record = parse_record

    def _normalize(
        self,
        batch: list[dict[str, Any]],
        cursor: datetime | None,
    ) -> tuple[dict[tuple[str, str, str], IncomingCard], int, list[str]]:
        candidates: dict[tuple[str, str, str], IncomingCard] = {}
        skipped = 0
        errors: list[str] = []

        for raw in batch:
            try:
                incoming = self.parse_record(raw)
            except RecordValidationError as e:
                errors.append(str(e))
                logger.warning("change_detector_invalid_record", record=e.record_ref, reason=e.reason)
                continue

            if (
                cursor is not None
                and incoming.source_updated_at is not None
                and incoming.source_updated_at <= cursor
            ):
                skipped += 1
                continue

            key = incoming.natural_key
            if key in candidates:
                logger.debug("change_detector_duplicate_key", record=incoming.ref)
                skipped += 1
            candidates[key] = incoming

        return candidates, skipped, errors

    async def classify(
        self,
        session: AsyncSession,
        batch: list[dict[str, Any]],
        cursor: datetime | None = None,
    ) -> BatchPlan:
        candidates, skipped, errors = self._normalize(batch, cursor)

        by_game: dict[str, list[tuple[str, str]]] = {}
        for game, set_code, number in candidates:
            by_game.setdefault(game, []).append((set_code, number))

        existing = {}
        for game, keys in by_game.items():
            found = await self.store.find_many_by_natural_keys(session, game, keys)
            for (set_code, number), row in found.items():
                existing[(game, set_code, number)] = row

        to_create: list[CardWrite] = []
        to_update: list[CardWrite] = []
        extensions_to_create: list[CardWrite] = []

        for key, incoming in candidates.items():
            stored = existing.get(key)
            if stored is None:
                to_create.append(CardWrite(uuid.uuid4(), incoming))
                continue

            if stored.extension is None:
                logger.info(
                    "change_detector_missing_extension",
                    record=incoming.ref,
                    card_id=str(stored.card.id),
                )
                extensions_to_create.append(CardWrite(stored.card.id, incoming))
                continue

            current = incoming_from_rows(stored.card, stored.extension)
            if compute_signature(incoming) != compute_signature(current):
                to_update.append(CardWrite(stored.card.id, incoming, stored.extension.id))
            else:
                skipped += 1

        return BatchPlan(to_create, to_update, extensions_to_create, skipped, errors)
