"""
Card Catalog Sync — Data Source Definitions

A data source ties a provider endpoint to a game, its transport and its
record parser. Sources are keyed by id; the id also names the on-disk cache
file and the import cursor row.

Transports:
- BULK: metadata listing + one downloaded array file (Scryfall bulk-data)
- PAGED_API: set list + paged card queries (pokemontcg.io v2)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, NamedTuple

from cardsync.config import Game, Settings, settings
from cardsync.errors import SourceError
from cardsync.pipeline.records import IncomingCard, parse_pokemon_card, parse_scryfall_card


class SourceKind(str, Enum):
    BULK = "bulk"
    PAGED_API = "paged_api"


class SourceDefinition(NamedTuple):
    """Static description of one synchronizable dataset."""
    source_id: str
    game: Game
    metadata_url: str
    dataset_type: str
    parse_record: Callable[[dict[str, Any]], IncomingCard]
    kind: SourceKind = SourceKind.BULK


def build_sources(config: Settings | None = None) -> dict[str, SourceDefinition]:
    """
    All sources enabled by configuration.

    The Pokémon source is only registered when POKEMONTCG_API_KEY is set.
    """
    config = config or settings
    sources = {
        "mtg": SourceDefinition(
            source_id="mtg",
            game=Game.MTG,
            metadata_url=config.SCRYFALL_BULK_DATA_URL,
            dataset_type=config.SCRYFALL_DATASET_TYPE,
            parse_record=parse_scryfall_card,
        ),
    }
    if config.POKEMONTCG_API_KEY:
        sources["pokemon"] = SourceDefinition(
            source_id="pokemon",
            game=Game.POKEMON,
            metadata_url=config.POKEMONTCG_API_URL,
            dataset_type="cards",
            parse_record=parse_pokemon_card,
            kind=SourceKind.PAGED_API,
        )
    return sources


def get_source(source_id: str, config: Settings | None = None) -> SourceDefinition:
    """Look up an enabled source by id."""
    sources = build_sources(config)
    try:
        return sources[source_id]
    except KeyError:
        raise SourceError(
            f"unknown or disabled source {source_id!r}; enabled: {sorted(sources)}"
        ) from None
