"""
Models package — export all SQLAlchemy models.
"""

from cardsync.models.base import Base
from cardsync.models.card import Card
from cardsync.models.import_cursor import ImportCursor
from cardsync.models.mtg_card import MTGCard
from cardsync.models.pokemon_card import PokemonCard

__all__ = ["Base", "Card", "ImportCursor", "MTGCard", "PokemonCard"]
