"""
SQLAlchemy 2.0 async DeclarativeBase for the card catalog.

All models inherit from this Base.
"""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSON on SQLite (tests), JSONB on PostgreSQL
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all catalog database models."""
    pass
