"""
Card Catalog Sync — Card Signature

SHA-256 over a canonical JSON encoding of a card's mutable display and
gameplay fields. Used to decide whether an existing row needs an update
when provider timestamps are absent or unreliable.

Canonical encoding:
- map keys sorted (json sort_keys)
- unordered collections (colors, keywords, types, ...) sorted
- empty strings encoded as null
- dates as ISO-8601 strings
Ordered collections (rules text, attacks, abilities) keep source order.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from typing import Any

from cardsync.pipeline.records import IncomingCard

# Fields whose element order carries no meaning
UNORDERED_FIELDS = frozenset(
    {"colors", "color_identity", "keywords", "types", "subtypes", "retreat_cost"}
)

# Base fields covered by the signature. game/set_code/number form the natural
# key and source_updated_at is provider bookkeeping; neither is hashed.
BASE_FIELDS = ("name", "set_name", "rarity", "image_url")


def _canonical(value: Any) -> Any:
    if isinstance(value, str):
        return value if value != "" else None
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, date):
        return value.isoformat()
    return value


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def signature_payload(card: IncomingCard) -> dict[str, Any]:
    """The canonical, order-independent dict the signature is computed over."""
    payload: dict[str, Any] = {field: _canonical(getattr(card, field)) for field in BASE_FIELDS}

    details = card.details.model_dump()
    for field, value in details.items():
        value = _canonical(value)
        if field in UNORDERED_FIELDS and isinstance(value, list):
            value = sorted(value, key=_sort_key)
        payload[f"{card.details.game}.{field}"] = value
    return payload


def compute_signature(card: IncomingCard) -> str:
    """Hex SHA-256 of the canonical payload."""
    encoded = json.dumps(
        signature_payload(card),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
