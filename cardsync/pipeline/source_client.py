"""
Card Catalog Sync — Source Clients

Two provider shapes feed the same batch pipeline:

Bulk file (Scryfall bulk-data), SourceClient:
    {"data": [{"type": "default_cards", "download_uri": "...", "size": 123,
               "updated_at": "...", ...}, ...]}
    The dataset file is downloaded once and stream-decoded.

Paged API (pokemontcg.io v2), PokemonTCGClient:
    GET /sets?orderBy=-releaseDate, then for each set
    GET /cards?q=set.id:<id>&page=N&pageSize=250 until the set is exhausted.
    Requests carry the X-Api-Key header.

Cache: one file per bulk source under CACHE_DIR, reused while its mtime is
within CACHE_MAX_AGE_HOURS. Refreshes stream into a temp file in the same
directory and are renamed over the cache file, so a crash never leaves a
partial cache.

Retries: explicit attempt loop with delays base, 2*base, 4*base ... capped at
DOWNLOAD_MAX_BACKOFF_SECONDS. Downloads return a typed DownloadOutcome rather
than raising on exhaustion.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, Any, AsyncIterator, NamedTuple

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from cardsync.config import settings
from cardsync.errors import DownloadExhaustedError, SourceError
from cardsync.pipeline.decoder import Batch, aiter_batches, iter_batches, iter_batches_threaded, iter_records
from cardsync.pipeline.sources import SourceDefinition, SourceKind, build_sources

logger = structlog.get_logger(__name__)

ERROR_BODY_LIMIT = 500

# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


class SourceDescriptor(BaseModel):
    """One dataset entry from a provider bulk-data listing."""
    source_id: str = Field(default="", description="Owning source, set by the client")
    id: str | None = None
    type: str = Field(..., description="Logical dataset type (e.g. 'default_cards')")
    name: str | None = None
    download_uri: str = Field(..., description="Where the dataset file lives")
    size: int | None = Field(default=None, description="Declared size in bytes")
    updated_at: datetime | None = Field(default=None, description="Last provider update")
    content_type: str | None = None
    content_encoding: str | None = None


class BulkDataListing(BaseModel):
    """Top-level metadata listing response."""
    data: list[SourceDescriptor] = Field(default_factory=list)


class PokemonSetInfo(BaseModel):
    """Set entry from pokemontcg.io /sets."""
    id: str = Field(..., description="Set id (e.g. 'sv1')")
    name: str | None = None
    series: str | None = None
    total: int | None = None
    releaseDate: str | None = Field(default=None, description="YYYY/MM/DD")
    updatedAt: str | None = Field(default=None, description="YYYY/MM/DD HH:MM:SS")


class PokemonSetList(BaseModel):
    data: list[PokemonSetInfo] = Field(default_factory=list)


class PokemonCardPage(BaseModel):
    """
    One page from pokemontcg.io /cards.

    Cards stay raw dicts: validation happens per record during change
    detection, so one bad card never fails the page.
    """
    data: list[dict[str, Any]] = Field(default_factory=list)
    page: int = 1
    pageSize: int = 0
    count: int = 0
    totalCount: int = 0


# ---------------------------------------------------------------------------
# Download outcome
# ---------------------------------------------------------------------------


class DownloadStatus(str, Enum):
    OK = "ok"
    EXHAUSTED = "exhausted"


class DownloadOutcome(NamedTuple):
    """Result of a download: a local file to read, or exhausted retries."""
    status: DownloadStatus
    path: Path | None
    attempts: int
    from_cache: bool = False
    temporary: bool = False
    last_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is DownloadStatus.OK


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------


class _ProviderClient:
    """httpx lifecycle, backoff schedule and the JSON GET retry loop."""

    def __init__(
        self,
        sources: dict[str, SourceDefinition] | None = None,
        max_attempts: int | None = None,
        base_backoff: float | None = None,
        max_backoff: float | None = None,
        timeout: float | None = None,
    ):
        self._sources = sources if sources is not None else build_sources()
        self._max_attempts = max_attempts if max_attempts is not None else settings.DOWNLOAD_MAX_ATTEMPTS
        self._base_backoff = (
            base_backoff if base_backoff is not None else settings.DOWNLOAD_BASE_BACKOFF_SECONDS
        )
        self._max_backoff = max_backoff if max_backoff is not None else settings.DOWNLOAD_MAX_BACKOFF_SECONDS
        self._timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self._client: httpx.AsyncClient | None = None

        if self._max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": settings.HTTP_USER_AGENT,
            "Accept": "application/json;q=0.9,*/*;q=0.8",
        }

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            headers=self._headers(),
            timeout=self._timeout,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def backoff_delays(self) -> list[float]:
        """Delays slept before attempts 2..N."""
        return [
            min(self._base_backoff * (2 ** i), self._max_backoff)
            for i in range(self._max_attempts - 1)
        ]

    def _source(self, source_id: str) -> SourceDefinition:
        source = self._sources.get(source_id)
        if source is None:
            raise SourceError(f"unknown or disabled source {source_id!r}")
        return source

    async def _get_json(
        self,
        source_id: str,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """
        GET `url` and decode JSON, retrying transport errors and non-200s.

        Raises:
            DownloadExhaustedError: Every attempt failed.
            SourceError: The provider answered 200 with a non-JSON body.
        """
        assert self._client is not None, "Client not initialized. Use 'async with'."

        last_error: str | None = None
        delays = self.backoff_delays()

        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(delays[attempt - 2])
            try:
                response = await self._client.get(url, params=params)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "source_request_error",
                    source_id=source_id,
                    url=url,
                    attempt=attempt,
                    error=last_error,
                )
                continue

            if response.status_code != 200:
                last_error = f"status {response.status_code}"
                logger.warning(
                    "source_http_error",
                    source_id=source_id,
                    url=url,
                    attempt=attempt,
                    status_code=response.status_code,
                    body=response.text[:ERROR_BODY_LIMIT],
                )
                continue

            try:
                return response.json()
            except ValueError as e:
                raise SourceError(f"response from {url} for {source_id!r} is not JSON") from e

        raise DownloadExhaustedError(source_id, self._max_attempts, last_error)


# ---------------------------------------------------------------------------
# Bulk file client
# ---------------------------------------------------------------------------


class SourceClient(_ProviderClient):
    """
    Async client for provider bulk-data endpoints.

    Usage:
        async with SourceClient() as client:
            descriptor = await client.fetch_descriptor("mtg")
            async with client.open_stream(descriptor) as stream:
                ...
    """

    def __init__(
        self,
        sources: dict[str, SourceDefinition] | None = None,
        cache_dir: str | Path | None = None,
        use_cache: bool = True,
        cache_max_age_hours: float | None = None,
        max_attempts: int | None = None,
        base_backoff: float | None = None,
        max_backoff: float | None = None,
        timeout: float | None = None,
    ):
        super().__init__(sources, max_attempts, base_backoff, max_backoff, timeout)
        self._cache_dir = Path(cache_dir or settings.CACHE_DIR)
        self._use_cache = use_cache
        self._cache_max_age_seconds = (
            cache_max_age_hours if cache_max_age_hours is not None else settings.CACHE_MAX_AGE_HOURS
        ) * 3600

    # -----------------------------------------------------------------------
    # Cache
    # -----------------------------------------------------------------------

    def cache_path(self, source_id: str) -> Path:
        return self._cache_dir / f"{source_id}.json"

    def _fresh_cache(self, source_id: str) -> Path | None:
        """Cache file for the source if it exists and is within the freshness window."""
        if not self._use_cache:
            return None
        path = self.cache_path(source_id)
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return None
        if age < self._cache_max_age_seconds:
            logger.info(
                "source_cache_hit",
                source_id=source_id,
                path=str(path),
                age_hours=round(age / 3600, 2),
            )
            return path
        logger.info("source_cache_stale", source_id=source_id, age_hours=round(age / 3600, 2))
        return None

    def _download_dir(self) -> tuple[Path, bool]:
        """(directory, temporary): the cache dir, or the system temp dir without a cache."""
        if self._use_cache:
            try:
                self._cache_dir.mkdir(parents=True, exist_ok=True)
                return self._cache_dir, False
            except OSError as e:
                logger.warning(
                    "source_cache_dir_unavailable",
                    cache_dir=str(self._cache_dir),
                    error=str(e),
                )
        return Path(tempfile.gettempdir()), True

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_descriptor(self, source_id: str) -> SourceDescriptor:
        """
        Fetch the provider listing and select this source's dataset entry.

        Raises:
            SourceError: Unknown source, malformed listing, or dataset type absent.
            DownloadExhaustedError: The listing could not be fetched.
        """
        source = self._source(source_id)
        logger.info("source_fetch_descriptor", source_id=source_id, url=source.metadata_url)

        payload = await self._get_json(source_id, source.metadata_url)
        try:
            listing = BulkDataListing.model_validate(payload)
        except ValidationError as e:
            raise SourceError(f"malformed metadata listing for {source_id!r}: {e}") from e

        for entry in listing.data:
            if entry.type == source.dataset_type:
                descriptor = entry.model_copy(update={"source_id": source_id})
                logger.info(
                    "source_descriptor_found",
                    source_id=source_id,
                    dataset_type=descriptor.type,
                    size=descriptor.size,
                    updated_at=descriptor.updated_at.isoformat() if descriptor.updated_at else None,
                )
                return descriptor

        raise SourceError(
            f"dataset type {source.dataset_type!r} not found in listing for {source_id!r}"
        )

    async def download(self, descriptor: SourceDescriptor) -> DownloadOutcome:
        """
        Make the dataset available as a local file.

        Reuses a fresh cache file when present. Otherwise downloads with
        retries; each failed attempt is logged and retried after a backoff.
        """
        assert self._client is not None, "Client not initialized. Use 'async with'."

        source_id = descriptor.source_id
        cached = self._fresh_cache(source_id)
        if cached is not None:
            return DownloadOutcome(DownloadStatus.OK, cached, attempts=0, from_cache=True)

        target_dir, temporary = self._download_dir()
        delays = self.backoff_delays()
        last_error: str | None = None

        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1:
                delay = delays[attempt - 2]
                logger.info("source_download_retry", source_id=source_id, attempt=attempt, wait_seconds=delay)
                await asyncio.sleep(delay)

            started = time.monotonic()
            try:
                path = await self._download_once(descriptor, target_dir, temporary)
            except _AttemptFailed as e:
                last_error = str(e)
                continue

            logger.info(
                "source_download_complete",
                source_id=source_id,
                attempt=attempt,
                path=str(path),
                bytes=path.stat().st_size,
                declared_size=descriptor.size,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            return DownloadOutcome(DownloadStatus.OK, path, attempts=attempt, temporary=temporary)

        logger.error(
            "source_download_exhausted",
            source_id=source_id,
            attempts=self._max_attempts,
            last_error=last_error,
        )
        return DownloadOutcome(
            DownloadStatus.EXHAUSTED, None, attempts=self._max_attempts, last_error=last_error
        )

    @asynccontextmanager
    async def open_stream(self, descriptor: SourceDescriptor) -> AsyncIterator[IO[bytes]]:
        """
        Download (or reuse the cache) and open the dataset as a binary stream.

        Raises:
            DownloadExhaustedError: All attempts failed.
        """
        outcome = await self.download(descriptor)
        if not outcome.ok or outcome.path is None:
            raise DownloadExhaustedError(descriptor.source_id, outcome.attempts, outcome.last_error)

        try:
            with open(outcome.path, "rb") as stream:
                yield stream
        finally:
            if outcome.temporary:
                outcome.path.unlink(missing_ok=True)

    @asynccontextmanager
    async def open_batches(self, source_id: str, batch_size: int) -> AsyncIterator[AsyncIterator[Batch]]:
        """
        Descriptor, download and stream decode in one step.

        Decoding runs in a worker thread one batch at a time.
        """
        descriptor = await self.fetch_descriptor(source_id)
        async with self.open_stream(descriptor) as stream:
            yield iter_batches_threaded(iter_batches(iter_records(stream), batch_size))

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _download_once(
        self,
        descriptor: SourceDescriptor,
        target_dir: Path,
        temporary: bool,
    ) -> Path:
        """One streamed download attempt into a temp file, renamed into place."""
        assert self._client is not None
        source_id = descriptor.source_id

        try:
            async with self._client.stream("GET", descriptor.download_uri) as response:
                if response.status_code != 200:
                    body = (await response.aread())[:ERROR_BODY_LIMIT].decode("utf-8", "replace")
                    logger.warning(
                        "source_download_http_error",
                        source_id=source_id,
                        status_code=response.status_code,
                        body=body,
                    )
                    raise _AttemptFailed(f"status {response.status_code}")

                fd, tmp_name = tempfile.mkstemp(
                    dir=target_dir, prefix=f"{source_id}_", suffix=".json.part"
                )
                tmp_path = Path(tmp_name)
                try:
                    with os.fdopen(fd, "wb") as fh:
                        async for chunk in response.aiter_bytes():
                            await asyncio.to_thread(fh.write, chunk)
                    if temporary:
                        return tmp_path
                    final_path = self.cache_path(source_id)
                    os.replace(tmp_path, final_path)
                    return final_path
                except BaseException:
                    tmp_path.unlink(missing_ok=True)
                    raise

        except httpx.HTTPError as e:
            logger.warning(
                "source_download_request_error",
                source_id=source_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _AttemptFailed(f"{type(e).__name__}: {e}") from e
        except OSError as e:
            logger.warning(
                "source_download_write_error",
                source_id=source_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _AttemptFailed(f"{type(e).__name__}: {e}") from e


class _AttemptFailed(Exception):
    """One download attempt failed; the loop decides whether to retry."""


# ---------------------------------------------------------------------------
# Paged API client (pokemontcg.io v2)
# ---------------------------------------------------------------------------


class PokemonTCGClient(_ProviderClient):
    """
    Async client for the pokemontcg.io v2 API.

    Walks every set, newest first, and pages through each set's cards.

    Usage:
        async with PokemonTCGClient() as client:
            async with client.open_batches("pokemon", 100) as batches:
                async for batch in batches:
                    ...
    """

    def __init__(
        self,
        sources: dict[str, SourceDefinition] | None = None,
        api_key: str | None = None,
        page_size: int | None = None,
        max_attempts: int | None = None,
        base_backoff: float | None = None,
        max_backoff: float | None = None,
        timeout: float | None = None,
    ):
        super().__init__(
            sources,
            max_attempts,
            base_backoff,
            max_backoff,
            timeout if timeout is not None else settings.POKEMONTCG_TIMEOUT_SECONDS,
        )
        self._api_key = api_key if api_key is not None else settings.POKEMONTCG_API_KEY
        self._page_size = page_size or settings.POKEMONTCG_PAGE_SIZE

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["X-Api-Key"] = self._api_key
        return headers

    async def fetch_sets(self, source_id: str) -> list[PokemonSetInfo]:
        """
        All sets, newest release first.

        Raises:
            SourceError: Unknown source or malformed response.
            DownloadExhaustedError: The set list could not be fetched.
        """
        source = self._source(source_id)
        url = f"{source.metadata_url.rstrip('/')}/sets"
        logger.info("pokemontcg_fetch_sets", source_id=source_id, url=url)

        payload = await self._get_json(source_id, url, params={"orderBy": "-releaseDate"})
        try:
            sets = PokemonSetList.model_validate(payload).data
        except ValidationError as e:
            raise SourceError(f"malformed set list for {source_id!r}: {e}") from e

        logger.info("pokemontcg_fetch_sets_complete", source_id=source_id, sets=len(sets))
        return sets

    async def fetch_card_page(self, source_id: str, set_id: str, page: int) -> PokemonCardPage:
        """One page of a set's cards."""
        source = self._source(source_id)
        url = f"{source.metadata_url.rstrip('/')}/cards"
        payload = await self._get_json(
            source_id,
            url,
            params={"q": f"set.id:{set_id}", "page": page, "pageSize": self._page_size},
        )
        try:
            return PokemonCardPage.model_validate(payload)
        except ValidationError as e:
            raise SourceError(
                f"malformed card page {page} of set {set_id!r} for {source_id!r}: {e}"
            ) from e

    async def iter_set_cards(self, source_id: str, set_id: str) -> AsyncIterator[dict[str, Any]]:
        """
        Raw card objects of one set, page by page.

        Stops on an empty page or once totalCount cards have been seen.
        """
        page = 1
        fetched = 0
        while True:
            result = await self.fetch_card_page(source_id, set_id, page)
            if not result.data:
                break
            for card in result.data:
                yield card
            fetched += len(result.data)

            logger.debug(
                "pokemontcg_fetch_set_page",
                set_id=set_id,
                page=page,
                page_count=len(result.data),
                total=result.totalCount,
                fetched_so_far=fetched,
            )
            if result.totalCount and fetched >= result.totalCount:
                break
            page += 1

        logger.info("pokemontcg_fetch_set_complete", set_id=set_id, total_cards=fetched)

    async def iter_cards(
        self, source_id: str, sets: list[PokemonSetInfo]
    ) -> AsyncIterator[dict[str, Any]]:
        for card_set in sets:
            async for card in self.iter_set_cards(source_id, card_set.id):
                yield card

    @asynccontextmanager
    async def open_batches(self, source_id: str, batch_size: int) -> AsyncIterator[AsyncIterator[Batch]]:
        """Fetch the set list, then stream every set's cards as batches."""
        sets = await self.fetch_sets(source_id)
        yield aiter_batches(self.iter_cards(source_id, sets), batch_size)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def client_for(
    source: SourceDefinition,
    sources: dict[str, SourceDefinition] | None = None,
    use_cache: bool = True,
) -> SourceClient | PokemonTCGClient:
    """The client matching a source's transport."""
    if source.kind is SourceKind.PAGED_API:
        return PokemonTCGClient(sources=sources)
    return SourceClient(sources=sources, use_cache=use_cache)
