"""Utility helpers for the Curator service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


NEUTRAL_LANGUAGE_CODES = frozenset({"", "xx", "null", "none", "zxx"})


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in the database."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalise_language(value: object) -> str | None:
    """Return a lower-cased language code, or ``None`` for language-neutral assets."""

    if value is None:
        return None
    code = str(value).strip().lower()
    if code in NEUTRAL_LANGUAGE_CODES:
        return None
    return code


def coerce_int(value: Any) -> int | None:
    """Best-effort integer conversion for loosely typed provider payloads."""

    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def entity_key(entity_type: str, entity_id: int, *parts: str) -> str:
    """Build the key used to serialise work on one entity (and optional asset type)."""

    return ":".join([entity_type, str(entity_id), *parts])
