"""
Card Catalog Sync — Catalog & Cursor Stores

CatalogStore: natural-key lookups and bulk create/update primitives for the
`cards` table and the per-game extension tables. Every method runs on the
caller's session so one batch stays inside one transaction.

ImportCursorStore: per-source last-success timestamps, monotonic.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, NamedTuple, assert_never

import structlog
from sqlalchemy import insert, select, tuple_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.models import Card, ImportCursor, MTGCard, PokemonCard
from cardsync.pipeline.records import GameDetails, IncomingCard, MTGDetails, PokemonDetails

logger = structlog.get_logger(__name__)

ExtensionRow = MTGCard | PokemonCard

EXTENSION_MODELS: dict[str, type[MTGCard] | type[PokemonCard]] = {
    "mtg": MTGCard,
    "pokemon": PokemonCard,
}


def _utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on round trip; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def extension_model(game: str) -> type[MTGCard] | type[PokemonCard]:
    try:
        return EXTENSION_MODELS[game]
    except KeyError:
        raise ValueError(f"no extension table for game {game!r}") from None


def extension_values(details: GameDetails) -> dict[str, Any]:
    """Column values for the extension row of `details`."""
    if isinstance(details, MTGDetails):
        return details.model_dump(exclude={"game"})
    if isinstance(details, PokemonDetails):
        return details.model_dump(exclude={"game"})
    assert_never(details)


def details_from_row(row: ExtensionRow) -> GameDetails:
    """Rebuild the tagged details variant from a stored extension row."""
    if isinstance(row, MTGCard):
        fields = MTGDetails.model_fields.keys() - {"game"}
        return MTGDetails(**{name: getattr(row, name) for name in fields})
    if isinstance(row, PokemonCard):
        fields = PokemonDetails.model_fields.keys() - {"game"}
        return PokemonDetails(**{name: getattr(row, name) for name in fields})
    assert_never(row)


def incoming_from_rows(card: Card, extension: ExtensionRow) -> IncomingCard:
    """Reconstruct the stored card in the same shape as a source record."""
    return IncomingCard(
        name=card.name,
        set_code=card.set_code,
        set_name=card.set_name,
        number=card.number,
        rarity=card.rarity,
        image_url=card.image_url,
        details=details_from_row(extension),
    )


class ExistingCard(NamedTuple):
    """A stored card and its extension row (None when the extension is missing)."""
    card: Card
    extension: ExtensionRow | None


class CardWrite(NamedTuple):
    """One pending write: the target card id and the incoming values."""
    card_id: uuid.UUID
    incoming: IncomingCard
    extension_id: uuid.UUID | None = None


# ---------------------------------------------------------------------------
# CatalogStore
# ---------------------------------------------------------------------------


class CatalogStore:
    """Storage primitives used by the change detector and upserter."""

    async def find_by_natural_key(
        self,
        session: AsyncSession,
        game: str,
        set_code: str,
        number: str,
    ) -> Card | None:
        result = await session.execute(
            select(Card).where(
                Card.game == game,
                Card.set_code == set_code,
                Card.number == number,
            )
        )
        return result.scalar_one_or_none()

    async def find_many_by_natural_keys(
        self,
        session: AsyncSession,
        game: str,
        keys: Iterable[tuple[str, str]],
    ) -> dict[tuple[str, str], ExistingCard]:
        """
        Fetch every stored card (and its extension row) for the given
        (set_code, number) pairs in one query.
        """
        pairs = list(dict.fromkeys(keys))
        if not pairs:
            return {}

        ext = extension_model(game)
        stmt = (
            select(Card, ext)
            .outerjoin(ext, ext.card_id == Card.id)
            .where(Card.game == game)
            .where(tuple_(Card.set_code, Card.number).in_(pairs))
        )
        result = await session.execute(stmt)

        found: dict[tuple[str, str], ExistingCard] = {}
        for card, extension in result:
            found[(card.set_code, card.number)] = ExistingCard(card, extension)
        return found

    async def create_cards(self, session: AsyncSession, writes: list[CardWrite], now: datetime) -> int:
        if not writes:
            return 0
        await session.execute(
            insert(Card),
            [
                {
                    "id": w.card_id,
                    "name": w.incoming.name,
                    "game": w.incoming.game,
                    "set_code": w.incoming.set_code,
                    "set_name": w.incoming.set_name,
                    "number": w.incoming.number,
                    "rarity": w.incoming.rarity,
                    "image_url": w.incoming.image_url,
                    "created_at": now,
                    "updated_at": now,
                }
                for w in writes
            ],
        )
        return len(writes)

    async def update_cards(self, session: AsyncSession, writes: list[CardWrite], now: datetime) -> int:
        """Bulk update by primary key; id and created_at are never touched."""
        if not writes:
            return 0
        await session.execute(
            update(Card),
            [
                {
                    "id": w.card_id,
                    "name": w.incoming.name,
                    "set_name": w.incoming.set_name,
                    "rarity": w.incoming.rarity,
                    "image_url": w.incoming.image_url,
                    "updated_at": now,
                }
                for w in writes
            ],
        )
        return len(writes)

    async def create_extensions(self, session: AsyncSession, writes: list[CardWrite], now: datetime) -> int:
        """Insert extension rows, grouped per game table."""
        for game, group in _group_by_game(writes).items():
            await session.execute(
                insert(extension_model(game)),
                [
                    {
                        "id": uuid.uuid4(),
                        "card_id": w.card_id,
                        **extension_values(w.incoming.details),
                        "created_at": now,
                        "updated_at": now,
                    }
                    for w in group
                ],
            )
        return len(writes)

    async def update_extensions(self, session: AsyncSession, writes: list[CardWrite], now: datetime) -> int:
        """Bulk update extension rows by their primary key."""
        for game, group in _group_by_game(writes).items():
            missing = [w for w in group if w.extension_id is None]
            if missing:
                raise ValueError(f"extension update without extension id: {missing[0].incoming.ref}")
            await session.execute(
                update(extension_model(game)),
                [
                    {
                        "id": w.extension_id,
                        **extension_values(w.incoming.details),
                        "updated_at": now,
                    }
                    for w in group
                ],
            )
        return len(writes)


def _group_by_game(writes: list[CardWrite]) -> dict[str, list[CardWrite]]:
    groups: dict[str, list[CardWrite]] = {}
    for w in writes:
        groups.setdefault(w.incoming.game, []).append(w)
    return groups


# ---------------------------------------------------------------------------
# ImportCursorStore
# ---------------------------------------------------------------------------


class ImportCursorStore:
    """Per-source last-success timestamps."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, source_id: str) -> datetime | None:
        async with self.session_factory() as session:
            row = await session.get(ImportCursor, source_id)
            return _utc(row.last_success) if row else None

    async def set(self, source_id: str, timestamp: datetime) -> datetime:
        """
        Advance the cursor to `timestamp`. An older timestamp leaves the stored
        value unchanged. Returns the value now stored.
        """
        timestamp = _utc(timestamp)
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(ImportCursor, source_id)
                if row is None:
                    session.add(ImportCursor(source_id=source_id, last_success=timestamp))
                    stored = timestamp
                elif _utc(row.last_success) >= timestamp:
                    stored = _utc(row.last_success)
                    if stored > timestamp:
                        logger.warning(
                            "import_cursor_not_advanced",
                            source_id=source_id,
                            stored=stored.isoformat(),
                            requested=timestamp.isoformat(),
                        )
                else:
                    row.last_success = timestamp
                    stored = timestamp

        logger.info("import_cursor_set", source_id=source_id, last_success=stored.isoformat())
        return stored
