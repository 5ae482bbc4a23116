"""
Tests for full import runs (cardsync/pipeline/importer.py).

Runs the whole pipeline against respx-mocked provider endpoints and a
file-backed SQLite catalog.

Covers:
- 250 records with batch size 100 → 250 created; a rerun writes nothing
- Empty set code on one record → one error, everything else imported
- Cursor advanced only after a run with no failed batch
- A rolled-back batch is imported by the next run
- Decode and download failures leave the cursor untouched
- Pokémon import over the paged pokemontcg.io API
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx
from sqlalchemy import func, select

from cardsync.config import Settings
from cardsync.errors import DownloadExhaustedError, SourceError, StreamDecodeError, WorkerPoolAborted
from cardsync.models import Card, MTGCard, PokemonCard
from cardsync.pipeline.importer import ImportResult, run_import
from cardsync.pipeline.source_client import PokemonTCGClient, SourceClient
from cardsync.pipeline.sources import build_sources
from cardsync.pipeline.store import ImportCursorStore
from cardsync.pipeline.upserter import Upserter

BULK_DATA_URL = "https://api.scryfall.com/bulk-data"
DOWNLOAD_URL = "https://data.scryfall.io/default-cards/default-cards.json"
POKEMON_API = "https://api.pokemontcg.io/v2"


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("cardsync.pipeline.source_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


async def _import(session_factory, tmp_path: Path, **kwargs) -> ImportResult:
    kwargs.setdefault("batch_size", 100)
    kwargs.setdefault("workers", 1)
    kwargs.setdefault("queue_size", 2)
    async with SourceClient(cache_dir=tmp_path / "cache", use_cache=False, max_attempts=2) as client:
        return await run_import("mtg", session_factory, client=client, **kwargs)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def _mock_provider(listing, body: bytes) -> None:
    respx.get(BULK_DATA_URL).mock(return_value=httpx.Response(200, json=listing))
    respx.get(DOWNLOAD_URL).mock(return_value=httpx.Response(200, content=body))


# ---------------------------------------------------------------------------
# Test 1: 250 new records, batch size 100
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initial_import_creates_everything(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    records = [make_scryfall_card(i) for i in range(1, 251)]

    with respx.mock:
        _mock_provider(listing, make_dataset(records))
        result = await _import(session_factory, tmp_path)

    assert result.total == 250
    assert result.created == 250
    assert result.updated == 0
    assert result.skipped == 0
    assert result.errors == []
    assert await _count(session_factory, Card) == 250
    assert await _count(session_factory, MTGCard) == 250


# ---------------------------------------------------------------------------
# Test 2: Immediate rerun is idempotent
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rerun_is_idempotent(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    records = [make_scryfall_card(i) for i in range(1, 251)]

    with respx.mock:
        _mock_provider(listing, make_dataset(records))
        await _import(session_factory, tmp_path)
        second = await _import(session_factory, tmp_path)

    assert second.created == 0
    assert second.updated == 0
    assert second.skipped == 250
    assert await _count(session_factory, Card) == 250


@pytest.mark.asyncio
async def test_rerun_without_timestamps_uses_signatures(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    records = [make_scryfall_card(i, updated_at=None) for i in range(1, 51)]
    changed = list(records)
    changed[10] = make_scryfall_card(11, updated_at=None, oracle_text="Changed text")

    with respx.mock:
        _mock_provider(listing, make_dataset(records))
        await _import(session_factory, tmp_path, batch_size=20)

    with respx.mock:
        _mock_provider(listing, make_dataset(changed))
        second = await _import(session_factory, tmp_path, batch_size=20)

    assert second.updated == 1
    assert second.skipped == 49
    assert second.created == 0


# ---------------------------------------------------------------------------
# Test 3: One record with an empty set code
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_set_code_is_one_error(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    records = [make_scryfall_card(i) for i in range(1, 11)]
    records[4] = make_scryfall_card(5, set="")

    with respx.mock:
        _mock_provider(listing, make_dataset(records))
        result = await _import(session_factory, tmp_path)

    assert result.total == 10
    assert result.created == 9
    assert len(result.errors) == 1
    assert "Test Card 5" in result.errors[0]
    assert await ImportCursorStore(session_factory).get("mtg") is not None


# ---------------------------------------------------------------------------
# Test 4: Cursor set to the run start time after success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cursor_advanced_on_success(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    before = datetime.now(timezone.utc)

    with respx.mock:
        _mock_provider(listing, make_dataset([make_scryfall_card(1)]))
        await _import(session_factory, tmp_path)

    cursor = await ImportCursorStore(session_factory).get("mtg")
    assert cursor is not None
    assert before <= cursor <= datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Test 5: Fatal failures leave the cursor untouched
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_truncated_stream_fails_run(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    body = make_dataset([make_scryfall_card(i) for i in range(1, 30)])[:-200]

    with respx.mock:
        _mock_provider(listing, body)
        with pytest.raises(StreamDecodeError):
            await _import(session_factory, tmp_path, batch_size=10)

    assert await ImportCursorStore(session_factory).get("mtg") is None


@pytest.mark.asyncio
async def test_download_exhaustion_fails_run(session_factory, tmp_path, listing) -> None:
    with respx.mock:
        respx.get(BULK_DATA_URL).mock(return_value=httpx.Response(200, json=listing))
        download = respx.get(DOWNLOAD_URL).mock(return_value=httpx.Response(503))

        with pytest.raises(DownloadExhaustedError):
            await _import(session_factory, tmp_path)

    assert download.call_count == 2
    assert await ImportCursorStore(session_factory).get("mtg") is None
    assert await _count(session_factory, Card) == 0


@pytest.mark.asyncio
async def test_repeated_batch_failures_abort_run(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    records = [make_scryfall_card(i) for i in range(1, 101)]

    with respx.mock, patch(
        "cardsync.pipeline.importer.Upserter.apply",
        new=AsyncMock(side_effect=RuntimeError("lock timeout")),
    ):
        _mock_provider(listing, make_dataset(records))
        with pytest.raises(WorkerPoolAborted):
            await _import(session_factory, tmp_path, batch_size=10, max_consecutive_failures=3)

    assert await ImportCursorStore(session_factory).get("mtg") is None


@pytest.mark.asyncio
async def test_failed_batch_holds_cursor_and_is_retried(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    records = [make_scryfall_card(i) for i in range(1, 21)]
    real_apply = Upserter.apply
    calls = 0

    async def deadlock_once(self, session, plan):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("deadlock detected")
        return await real_apply(self, session, plan)

    with respx.mock, patch.object(Upserter, "apply", deadlock_once):
        _mock_provider(listing, make_dataset(records))
        first = await _import(session_factory, tmp_path, batch_size=10)

    assert first.created == 10
    assert len(first.errors) == 1
    assert "deadlock detected" in first.errors[0]
    assert await ImportCursorStore(session_factory).get("mtg") is None

    with respx.mock:
        _mock_provider(listing, make_dataset(records))
        second = await _import(session_factory, tmp_path, batch_size=10)

    assert second.created == 10
    assert second.skipped == 10
    assert second.errors == []
    assert await _count(session_factory, Card) == 20
    assert await ImportCursorStore(session_factory).get("mtg") is not None


@pytest.mark.asyncio
async def test_failed_batch_keeps_previous_cursor(
    session_factory, tmp_path, listing, make_scryfall_card, make_dataset
) -> None:
    previous = datetime(2023, 6, 1, tzinfo=timezone.utc)
    await ImportCursorStore(session_factory).set("mtg", previous)

    with respx.mock, patch(
        "cardsync.pipeline.importer.Upserter.apply",
        new=AsyncMock(side_effect=RuntimeError("lock timeout")),
    ):
        _mock_provider(listing, make_dataset([make_scryfall_card(1)]))
        result = await _import(session_factory, tmp_path, max_consecutive_failures=0)

    assert len(result.errors) == 1
    assert await ImportCursorStore(session_factory).get("mtg") == previous


# ---------------------------------------------------------------------------
# Test 6: Unknown source
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_source(session_factory) -> None:
    with pytest.raises(SourceError):
        await run_import("yugioh", session_factory)


@pytest.mark.asyncio
async def test_zero_batch_size_rejected(session_factory) -> None:
    # No routes: any provider request would fail the test.
    with respx.mock:
        with pytest.raises(ValueError, match="batch_size"):
            await run_import("mtg", session_factory, batch_size=0)


# ---------------------------------------------------------------------------
# Test 7: Pokémon import over the paged API
# ---------------------------------------------------------------------------


def _mock_pokemon_api(cards: list[dict]) -> None:
    respx.get(f"{POKEMON_API}/sets").mock(
        return_value=httpx.Response(200, json={"data": [{"id": "sv1", "name": "Scarlet & Violet"}]})
    )

    def cards_page(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        size = int(request.url.params["pageSize"])
        chunk = cards[(page - 1) * size: page * size]
        return httpx.Response(200, json={"data": chunk, "page": page, "totalCount": len(cards)})

    respx.get(f"{POKEMON_API}/cards").mock(side_effect=cards_page)


@pytest.mark.asyncio
async def test_pokemon_import_over_paged_api(session_factory, make_pokemon_card) -> None:
    sources = build_sources(Settings(POKEMONTCG_API_KEY="test-key"))
    cards = [make_pokemon_card(i, set_id="sv1") for i in range(1, 8)]

    with respx.mock:
        _mock_pokemon_api(cards)
        async with PokemonTCGClient(sources=sources, api_key="test-key", page_size=3) as client:
            first = await run_import(
                "pokemon", session_factory, client=client, sources=sources,
                batch_size=2, workers=1, queue_size=2,
            )
            second = await run_import(
                "pokemon", session_factory, client=client, sources=sources,
                batch_size=2, workers=1, queue_size=2,
            )

    assert first.total == 7
    assert first.created == 7
    assert first.errors == []
    assert await _count(session_factory, PokemonCard) == 7
    assert second.created == 0
    assert second.skipped == 7
    assert await ImportCursorStore(session_factory).get("pokemon") is not None
