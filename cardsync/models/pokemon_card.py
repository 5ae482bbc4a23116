"""
Card Catalog Sync — Pokémon Extension Model

1:1 extension of `cards` holding pokemontcg.io gameplay fields.
Attacks, abilities, weaknesses and resistances are stored as JSON lists.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import INTEGER, TIMESTAMP, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class PokemonCard(Base):
    """Pokémon-specific card data, keyed by the owning card's id."""

    __tablename__ = "pokemon_cards"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("cards.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    hp: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    evolves_from: Mapped[str | None] = mapped_column(String, nullable=True)
    evolves_to: Mapped[list[str]] = mapped_column(JSONType, default=list)
    types: Mapped[list[str]] = mapped_column(JSONType, default=list)
    subtypes: Mapped[list[str]] = mapped_column(JSONType, default=list)
    supertype: Mapped[str | None] = mapped_column(String, nullable=True)
    rules: Mapped[list[str]] = mapped_column(JSONType, default=list)
    abilities: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    attacks: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    weaknesses: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    resistances: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    retreat_cost: Mapped[list[str]] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<PokemonCard card_id={self.card_id!r} supertype={self.supertype!r}>"
