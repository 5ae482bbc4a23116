"""
Card Catalog Sync — Canonical Card Model

One row per printed card across all games. The natural key
(game, set_code, number) is unique and drives reconciliation; `id` is the
FK target for the per-game extension tables. Rows are created on first
import and mutated in place afterwards, never deleted by the pipeline.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import TIMESTAMP, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base


class Card(Base):
    """Canonical catalog record."""

    __tablename__ = "cards"
    __table_args__ = (
        UniqueConstraint("game", "set_code", "number", name="uq_cards_natural_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Stable identifier, assigned once and never reused",
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    game: Mapped[str] = mapped_column(
        String, nullable=False, comment="Game tag: 'mtg', 'pokemon'"
    )
    set_code: Mapped[str] = mapped_column(String, nullable=False)
    set_name: Mapped[str | None] = mapped_column(String, nullable=True)
    number: Mapped[str] = mapped_column(
        String, nullable=False, comment="Collector number within the set"
    )
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Card id={self.id!r} game={self.game!r} "
            f"key={self.set_code!r}/{self.number!r} name={self.name!r}>"
        )
