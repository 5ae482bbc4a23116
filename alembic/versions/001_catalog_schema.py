"""Catalog schema — cards, mtg_cards, pokemon_cards, import_cursors

Revision ID: 001_catalog_schema
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers
revision: str = "001_catalog_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # --- cards (canonical record, natural key game/set_code/number) ---
    op.create_table(
        "cards",
        sa.Column("id", sa.Uuid(), primary_key=True, comment="Stable identifier, assigned once and never reused"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("game", sa.String(), nullable=False, comment="Game tag: 'mtg', 'pokemon'"),
        sa.Column("set_code", sa.String(), nullable=False),
        sa.Column("set_name", sa.String(), nullable=True),
        sa.Column("number", sa.String(), nullable=False, comment="Collector number within the set"),
        sa.Column("rarity", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("game", "set_code", "number", name="uq_cards_natural_key"),
    )

    # --- mtg_cards (1:1 extension) ---
    op.create_table(
        "mtg_cards",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "card_id",
            sa.Uuid(),
            sa.ForeignKey("cards.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("mana_cost", sa.String(), nullable=True),
        sa.Column("cmc", sa.Float(), nullable=True),
        sa.Column("type_line", sa.String(), nullable=True),
        sa.Column("oracle_text", sa.Text(), nullable=True),
        sa.Column("power", sa.String(), nullable=True),
        sa.Column("toughness", sa.String(), nullable=True),
        sa.Column("loyalty", sa.String(), nullable=True),
        sa.Column("colors", JSONB(), nullable=True),
        sa.Column("color_identity", JSONB(), nullable=True),
        sa.Column("keywords", JSONB(), nullable=True),
        sa.Column("legalities", JSONB(), nullable=True),
        sa.Column("reserved", sa.BOOLEAN(), nullable=True),
        sa.Column("foil", sa.BOOLEAN(), nullable=True),
        sa.Column("nonfoil", sa.BOOLEAN(), nullable=True),
        sa.Column("promo", sa.BOOLEAN(), nullable=True),
        sa.Column("reprint", sa.BOOLEAN(), nullable=True),
        sa.Column("variation", sa.BOOLEAN(), nullable=True),
        sa.Column("set_type", sa.String(), nullable=True),
        sa.Column("released_at", sa.DATE(), nullable=True),
        *_timestamps(),
    )

    # --- pokemon_cards (1:1 extension) ---
    op.create_table(
        "pokemon_cards",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "card_id",
            sa.Uuid(),
            sa.ForeignKey("cards.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("hp", sa.INTEGER(), nullable=True),
        sa.Column("evolves_from", sa.String(), nullable=True),
        sa.Column("evolves_to", JSONB(), nullable=True),
        sa.Column("types", JSONB(), nullable=True),
        sa.Column("subtypes", JSONB(), nullable=True),
        sa.Column("supertype", sa.String(), nullable=True),
        sa.Column("rules", JSONB(), nullable=True),
        sa.Column("abilities", JSONB(), nullable=True),
        sa.Column("attacks", JSONB(), nullable=True),
        sa.Column("weaknesses", JSONB(), nullable=True),
        sa.Column("resistances", JSONB(), nullable=True),
        sa.Column("retreat_cost", JSONB(), nullable=True),
        *_timestamps(),
    )

    # --- import_cursors (one row per source) ---
    op.create_table(
        "import_cursors",
        sa.Column("source_id", sa.String(), primary_key=True, comment="Data source id: 'mtg', 'pokemon'"),
        sa.Column(
            "last_success",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            comment="Start time of the last successful run",
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("import_cursors")
    op.drop_table("pokemon_cards")
    op.drop_table("mtg_cards")
    op.drop_table("cards")
