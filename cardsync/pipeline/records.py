"""
Card Catalog Sync — Source Record Models & Normalization

Raw provider records are validated with Pydantic and normalized into an
`IncomingCard`: the base catalog fields plus a game-specific `details` value.
Details are a closed set of tagged variants discriminated by `game`, so
change detection and upserts dispatch over a known set of shapes.

Supported payloads:
- Scryfall card objects (bulk `default_cards`)         → MTGDetails
- pokemontcg.io v2 card objects (with nested `set`)    → PokemonDetails
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from cardsync.errors import RecordValidationError

logger = structlog.get_logger(__name__)


def _blank_to_none(v: Any) -> Any:
    """Providers send "" and null interchangeably for absent text."""
    if isinstance(v, str) and v.strip() == "":
        return None
    return v


def _none_to_empty(v: Any) -> Any:
    return [] if v is None else v


# ---------------------------------------------------------------------------
# Game-specific variants
# ---------------------------------------------------------------------------


class MTGDetails(BaseModel):
    """Magic: The Gathering gameplay fields."""
    game: Literal["mtg"] = "mtg"
    mana_cost: str | None = None
    cmc: float | None = None
    type_line: str | None = None
    oracle_text: str | None = None
    power: str | None = None
    toughness: str | None = None
    loyalty: str | None = None
    colors: list[str] = Field(default_factory=list)
    color_identity: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    legalities: dict[str, str] = Field(default_factory=dict)
    reserved: bool = False
    foil: bool = False
    nonfoil: bool = False
    promo: bool = False
    reprint: bool = False
    variation: bool = False
    set_type: str | None = None
    released_at: date | None = None

    @field_validator(
        "mana_cost", "type_line", "oracle_text", "power", "toughness", "loyalty", "set_type",
        mode="before",
    )
    @classmethod
    def blank_text(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("colors", "color_identity", "keywords", mode="before")
    @classmethod
    def null_collections(cls, v: Any) -> Any:
        return _none_to_empty(v)

    @field_validator("legalities", mode="before")
    @classmethod
    def null_legalities(cls, v: Any) -> Any:
        return {} if v is None or v == [] else v


class PokemonDetails(BaseModel):
    """Pokémon TCG gameplay fields."""
    game: Literal["pokemon"] = "pokemon"
    hp: int | None = None
    evolves_from: str | None = None
    evolves_to: list[str] = Field(default_factory=list)
    types: list[str] = Field(default_factory=list)
    subtypes: list[str] = Field(default_factory=list)
    supertype: str | None = None
    rules: list[str] = Field(default_factory=list)
    abilities: list[dict[str, Any]] = Field(default_factory=list)
    attacks: list[dict[str, Any]] = Field(default_factory=list)
    weaknesses: list[dict[str, Any]] = Field(default_factory=list)
    resistances: list[dict[str, Any]] = Field(default_factory=list)
    retreat_cost: list[str] = Field(default_factory=list)

    @field_validator("evolves_from", "supertype", mode="before")
    @classmethod
    def blank_text(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator(
        "evolves_to", "types", "subtypes", "rules", "abilities", "attacks",
        "weaknesses", "resistances", "retreat_cost",
        mode="before",
    )
    @classmethod
    def null_collections(cls, v: Any) -> Any:
        return _none_to_empty(v)


GameDetails = Annotated[MTGDetails | PokemonDetails, Field(discriminator="game")]


class IncomingCard(BaseModel):
    """
    A normalized source record, ready for change detection.

    `source_updated_at` is the provider's last-modified time when it sends
    one; None means "unknown", so the signature decides.
    """
    name: str
    set_code: str
    set_name: str | None = None
    number: str
    rarity: str | None = None
    image_url: str | None = None
    source_updated_at: datetime | None = None
    details: GameDetails

    @field_validator("set_name", "rarity", "image_url", mode="before")
    @classmethod
    def blank_text(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @property
    def game(self) -> str:
        return self.details.game

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.details.game, self.set_code, self.number)

    @property
    def ref(self) -> str:
        return f"{self.details.game}:{self.set_code}/{self.number} {self.name!r}"


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _parse_timestamp(value: str | None, record_ref: str) -> datetime | None:
    """Parse a provider last-modified timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise RecordValidationError(record_ref, f"unparseable updated_at {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_release_date(value: str | None, record_ref: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value.replace("/", "-"))
    except ValueError:
        logger.warning("record_invalid_release_date", record=record_ref, raw_date=value)
        return None


def _validation_message(e: ValidationError) -> str:
    first = e.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"invalid record ({location}: {first.get('msg')})"


def raw_record_ref(raw: Any, set_key: str, number_key: str) -> str:
    """Human-readable reference for a raw record, usable before validation."""
    if not isinstance(raw, dict):
        return f"<{type(raw).__name__}>"
    set_value = raw.get(set_key)
    if isinstance(set_value, dict):
        set_value = set_value.get("id")
    return (
        f"{set_value or '?'}/{raw.get(number_key) or '?'} "
        f"{raw.get('name')!r} (id={raw.get('id')})"
    )


# ---------------------------------------------------------------------------
# Scryfall (MTG)
# ---------------------------------------------------------------------------


class ScryfallImageURIs(BaseModel):
    small: str | None = None
    normal: str | None = None
    large: str | None = None


class ScryfallCardFace(BaseModel):
    image_uris: ScryfallImageURIs | None = None


class ScryfallCard(BaseModel):
    """Card object from Scryfall bulk data. Unknown fields are ignored."""
    id: str | None = None
    name: str = ""
    set: str = ""
    set_name: str | None = None
    collector_number: str = ""
    rarity: str | None = None
    image_uris: ScryfallImageURIs | None = None
    card_faces: list[ScryfallCardFace] | None = None
    mana_cost: str | None = None
    cmc: float | None = None
    type_line: str | None = None
    oracle_text: str | None = None
    power: str | None = None
    toughness: str | None = None
    loyalty: str | None = None
    colors: list[str] | None = None
    color_identity: list[str] | None = None
    keywords: list[str] | None = None
    legalities: dict[str, str] | None = None
    reserved: bool = False
    foil: bool = False
    nonfoil: bool = False
    promo: bool = False
    reprint: bool = False
    variation: bool = False
    set_type: str | None = None
    released_at: str | None = None
    updated_at: str | None = None

    @field_validator("set", "collector_number", mode="before")
    @classmethod
    def null_key(cls, v: Any) -> Any:
        return "" if v is None else v

    @property
    def image_url(self) -> str | None:
        """Large image, falling back to the front face for double-faced cards."""
        uris = self.image_uris
        if uris is None and self.card_faces:
            uris = self.card_faces[0].image_uris
        if uris is None:
            return None
        return uris.large or uris.normal or uris.small


def parse_scryfall_card(raw: dict[str, Any]) -> IncomingCard:
    """
    Normalize one Scryfall card object.

    Raises:
        RecordValidationError: invalid shape, missing set/collector number,
            or an unparseable updated_at.
    """
    ref = raw_record_ref(raw, "set", "collector_number")
    try:
        card = ScryfallCard.model_validate(raw)
    except ValidationError as e:
        raise RecordValidationError(ref, _validation_message(e)) from e

    if not card.set.strip() or not card.collector_number.strip():
        raise RecordValidationError(ref, "missing set code or collector number")

    details = MTGDetails(
        mana_cost=card.mana_cost,
        cmc=card.cmc,
        type_line=card.type_line,
        oracle_text=card.oracle_text,
        power=card.power,
        toughness=card.toughness,
        loyalty=card.loyalty,
        colors=card.colors,
        color_identity=card.color_identity,
        keywords=card.keywords,
        legalities=card.legalities,
        reserved=card.reserved,
        foil=card.foil,
        nonfoil=card.nonfoil,
        promo=card.promo,
        reprint=card.reprint,
        variation=card.variation,
        set_type=card.set_type,
        released_at=_parse_release_date(card.released_at, ref),
    )
    return IncomingCard(
        name=card.name,
        set_code=card.set,
        set_name=card.set_name,
        number=card.collector_number,
        rarity=card.rarity,
        image_url=card.image_url,
        source_updated_at=_parse_timestamp(card.updated_at, ref),
        details=details,
    )


# ---------------------------------------------------------------------------
# pokemontcg.io (Pokémon)
# ---------------------------------------------------------------------------


class PokemonSetRef(BaseModel):
    id: str = ""
    name: str | None = None
    updatedAt: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def null_id(cls, v: Any) -> Any:
        return "" if v is None else v


class PokemonImages(BaseModel):
    small: str | None = None
    large: str | None = None


class PokemonTCGCard(BaseModel):
    """Card object in pokemontcg.io v2 shape. Unknown fields are ignored."""
    id: str | None = None
    name: str = ""
    number: str = ""
    set: PokemonSetRef = Field(default_factory=PokemonSetRef)
    rarity: str | None = None
    images: PokemonImages | None = None
    hp: str | None = None
    evolvesFrom: str | None = None
    evolvesTo: list[str] | None = None
    types: list[str] | None = None
    subtypes: list[str] | None = None
    supertype: str | None = None
    rules: list[str] | None = None
    abilities: list[dict[str, Any]] | None = None
    attacks: list[dict[str, Any]] | None = None
    weaknesses: list[dict[str, Any]] | None = None
    resistances: list[dict[str, Any]] | None = None
    retreatCost: list[str] | None = None
    updatedAt: str | None = None

    @field_validator("number", mode="before")
    @classmethod
    def null_number(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("hp", mode="before")
    @classmethod
    def hp_as_text(cls, v: Any) -> Any:
        return None if v is None else str(v)

    def hp_value(self) -> int | None:
        """HP as an integer; non-numeric values (e.g. "-") become None."""
        if self.hp is None:
            return None
        try:
            return int(self.hp)
        except ValueError:
            return None


def _pokemon_timestamp(value: str | None) -> str | None:
    """pokemontcg.io writes "YYYY/MM/DD HH:MM:SS"."""
    return value.replace("/", "-") if value else None


def parse_pokemon_card(raw: dict[str, Any]) -> IncomingCard:
    """
    Normalize one pokemontcg.io card object.

    Raises:
        RecordValidationError: invalid shape, missing set id/number,
            or an unparseable updatedAt.
    """
    ref = raw_record_ref(raw, "set", "number")
    try:
        card = PokemonTCGCard.model_validate(raw)
    except ValidationError as e:
        raise RecordValidationError(ref, _validation_message(e)) from e

    if not card.set.id.strip() or not card.number.strip():
        raise RecordValidationError(ref, "missing set code or collector number")

    details = PokemonDetails(
        hp=card.hp_value(),
        evolves_from=card.evolvesFrom,
        evolves_to=card.evolvesTo,
        types=card.types,
        subtypes=card.subtypes,
        supertype=card.supertype,
        rules=card.rules,
        abilities=card.abilities,
        attacks=card.attacks,
        weaknesses=card.weaknesses,
        resistances=card.resistances,
        retreat_cost=card.retreatCost,
    )
    image_url = None
    if card.images:
        image_url = card.images.large or card.images.small
    return IncomingCard(
        name=card.name,
        set_code=card.set.id,
        set_name=card.set.name,
        number=card.number,
        rarity=card.rarity,
        image_url=image_url,
        source_updated_at=_parse_timestamp(_pokemon_timestamp(card.updatedAt or card.set.updatedAt), ref),
        details=details,
    )
