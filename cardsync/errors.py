"""
Card Catalog Sync — Error Taxonomy

(a) transient network failures   → DownloadExhaustedError once retries run out
(b) structural decode failures   → StreamDecodeError, fatal to the run
(c) per-record validation        → RecordValidationError, skipped and counted
(d) per-batch storage failures   → sqlalchemy errors, batch rolled back
(e) scheduler-level failures     → any of the above, caught per source
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all pipeline errors."""


class SourceError(SyncError):
    """Provider metadata is unusable (unknown source, missing dataset type)."""


class DownloadExhaustedError(SyncError):
    """All download attempts failed."""

    def __init__(self, source_id: str, attempts: int, last_error: str | None) -> None:
        self.source_id = source_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"download for {source_id!r} failed after {attempts} attempts: {last_error}"
        )


class StreamDecodeError(SyncError):
    """The dataset stream is not a well-formed top-level JSON array of objects."""


class RecordValidationError(SyncError):
    """A single source record cannot be imported."""

    def __init__(self, record_ref: str, reason: str) -> None:
        self.record_ref = record_ref
        self.reason = reason
        super().__init__(f"{record_ref}: {reason}")


class WorkerPoolAborted(SyncError):
    """Too many consecutive batch failures; the run is considered failed."""
