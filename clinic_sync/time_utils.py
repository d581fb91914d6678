"""Timestamp helpers used for notifications and revision ordering."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_iso_now() -> str:
    return utc_now().isoformat()


def coerce_revision(value: Any) -> Optional[float]:
    """Return a comparable number for a revision or timestamp value.

    Integers and floats are used as-is, numeric strings are parsed, and
    ISO-8601 strings (a trailing ``Z`` is accepted) become epoch seconds.
    Anything else yields ``None``.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text)).timestamp()
        except ValueError:
            return None
    return None


__all__ = ["coerce_revision", "ensure_utc", "utc_iso_now", "utc_now"]
