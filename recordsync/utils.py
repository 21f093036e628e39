"""Utility helpers for the RecordSync service."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any


DISAMBIGUATION_SUFFIX_RE = re.compile(r"\s*\(\d+\)$")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime for database columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_now() -> str:
    """Return the current UTC time as an ISO 8601 string with a ``Z`` suffix."""

    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def strip_disambiguation(name: str) -> str:
    """Remove a trailing Discogs disambiguation suffix such as ``" (2)"``."""

    return DISAMBIGUATION_SUFFIX_RE.sub("", name)


def coerce_int(value: Any, *, default: int | None = None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp, tolerating the ``Z`` suffix."""

    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
