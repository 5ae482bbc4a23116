"""
Card Catalog Sync — Magic: The Gathering Extension Model

1:1 extension of `cards` holding Scryfall gameplay fields.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import BOOLEAN, DATE, TIMESTAMP, Float, ForeignKey, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class MTGCard(Base):
    """MTG-specific card data, keyed by the owning card's id."""

    __tablename__ = "mtg_cards"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("cards.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    mana_cost: Mapped[str | None] = mapped_column(String, nullable=True)
    cmc: Mapped[float | None] = mapped_column(Float, nullable=True)
    type_line: Mapped[str | None] = mapped_column(String, nullable=True)
    oracle_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    power: Mapped[str | None] = mapped_column(String, nullable=True)
    toughness: Mapped[str | None] = mapped_column(String, nullable=True)
    loyalty: Mapped[str | None] = mapped_column(String, nullable=True)
    colors: Mapped[list[str]] = mapped_column(JSONType, default=list)
    color_identity: Mapped[list[str]] = mapped_column(JSONType, default=list)
    keywords: Mapped[list[str]] = mapped_column(JSONType, default=list)
    legalities: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    reserved: Mapped[bool] = mapped_column(BOOLEAN, default=False)
    foil: Mapped[bool] = mapped_column(BOOLEAN, default=False)
    nonfoil: Mapped[bool] = mapped_column(BOOLEAN, default=False)
    promo: Mapped[bool] = mapped_column(BOOLEAN, default=False)
    reprint: Mapped[bool] = mapped_column(BOOLEAN, default=False)
    variation: Mapped[bool] = mapped_column(BOOLEAN, default=False)
    set_type: Mapped[str | None] = mapped_column(String, nullable=True)
    released_at: Mapped[date | None] = mapped_column(DATE, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<MTGCard card_id={self.card_id!r} type_line={self.type_line!r}>"
