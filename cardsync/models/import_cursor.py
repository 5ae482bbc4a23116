"""
Card Catalog Sync — Import Cursor Model

One row per data source holding the timestamp of the last run that
completed without a fatal error. Read at run start to skip records the
provider has not modified since; written only on success.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base


class ImportCursor(Base):
    """Last successful import per source."""

    __tablename__ = "import_cursors"

    source_id: Mapped[str] = mapped_column(
        String, primary_key=True, comment="Data source id: 'mtg', 'pokemon'"
    )
    last_success: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="Start time of the last successful run",
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<ImportCursor source_id={self.source_id!r} last_success={self.last_success!r}>"
