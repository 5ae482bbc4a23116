"""
Card Catalog Sync — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- File-backed aiosqlite database with the catalog schema
- Raw Scryfall / pokemontcg.io record factories
- Async test support via pytest-asyncio
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cardsync.models import Base


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)

BULK_DATA_URL = "https://api.scryfall.com/bulk-data"
DOWNLOAD_URL = "https://data.scryfall.io/default-cards/default-cards.json"


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    aiosqlite engine on a file under tmp_path.

    A file (not :memory:) so every session/connection sees the same database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Record Factories
# ---------------------------------------------------------------------------


def scryfall_card(
    number: int | str = 1,
    set_code: str = "neo",
    name: str | None = None,
    **overrides: Any,
) -> dict[str, Any]:
    """A Scryfall card object as found in the default_cards bulk file."""
    record: dict[str, Any] = {
        "object": "card",
        "id": f"scryfall-{set_code}-{number}",
        "name": name or f"Test Card {number}",
        "set": set_code,
        "set_name": "Kamigawa: Neon Dynasty",
        "set_type": "expansion",
        "collector_number": str(number),
        "rarity": "common",
        "image_uris": {
            "small": f"https://cards.scryfall.io/small/{set_code}/{number}.jpg",
            "normal": f"https://cards.scryfall.io/normal/{set_code}/{number}.jpg",
            "large": f"https://cards.scryfall.io/large/{set_code}/{number}.jpg",
        },
        "mana_cost": "{1}{U}",
        "cmc": 2.0,
        "type_line": "Creature — Human Wizard",
        "oracle_text": "Flying",
        "power": "2",
        "toughness": "1",
        "colors": ["U"],
        "color_identity": ["U"],
        "keywords": ["Flying"],
        "legalities": {"standard": "legal", "modern": "legal"},
        "reserved": False,
        "foil": True,
        "nonfoil": True,
        "promo": False,
        "reprint": False,
        "variation": False,
        "released_at": "2022-02-18",
        "updated_at": "2024-01-01T00:00:00+00:00",
    }
    record.update(overrides)
    return record


def pokemon_card(number: int | str = 1, set_id: str = "sv1", **overrides: Any) -> dict[str, Any]:
    """A pokemontcg.io v2 card object."""
    record: dict[str, Any] = {
        "id": f"{set_id}-{number}",
        "name": f"Sprigatito {number}",
        "supertype": "Pokémon",
        "subtypes": ["Basic"],
        "hp": "60",
        "types": ["Grass"],
        "evolvesTo": ["Floragato"],
        "attacks": [{"name": "Scratch", "cost": ["Grass"], "damage": "20"}],
        "weaknesses": [{"type": "Fire", "value": "×2"}],
        "retreatCost": ["Colorless"],
        "number": str(number),
        "rarity": "Common",
        "set": {"id": set_id, "name": "Scarlet & Violet"},
        "images": {
            "small": f"https://images.pokemontcg.io/{set_id}/{number}.png",
            "large": f"https://images.pokemontcg.io/{set_id}/{number}_hires.png",
        },
        "updatedAt": "2024/01/01 00:00:00",
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_scryfall_card():
    return scryfall_card


@pytest.fixture
def make_pokemon_card():
    return pokemon_card


def bulk_listing(download_uri: str = DOWNLOAD_URL, dataset_type: str = "default_cards") -> dict[str, Any]:
    """Scryfall bulk-data listing with the requested dataset plus a decoy."""
    return {
        "object": "list",
        "has_more": False,
        "data": [
            {
                "object": "bulk_data",
                "id": "27bf3214-1271-490b-bdfe-c0be6c23d02e",
                "type": "oracle_cards",
                "name": "Oracle Cards",
                "download_uri": "https://data.scryfall.io/oracle-cards/oracle-cards.json",
                "updated_at": "2024-01-02T09:05:00.000+00:00",
                "size": 150000000,
                "content_type": "application/json",
                "content_encoding": "gzip",
            },
            {
                "object": "bulk_data",
                "id": "e2ef41e3-5778-4bc2-af3f-78eca4dd9c23",
                "type": dataset_type,
                "name": "Default Cards",
                "download_uri": download_uri,
                "updated_at": "2024-01-02T09:10:00.000+00:00",
                "size": 400000000,
                "content_type": "application/json",
                "content_encoding": "gzip",
            },
        ],
    }


def dataset_bytes(records: list[dict[str, Any]]) -> bytes:
    return json.dumps(records).encode("utf-8")


@pytest.fixture
def listing() -> dict[str, Any]:
    return bulk_listing()


@pytest.fixture
def make_dataset():
    return dataset_bytes
