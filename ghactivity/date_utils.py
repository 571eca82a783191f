"""Shared timestamp parsing and normalization helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FREE_TEXT_FORMATS = (
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%Y.%m.%d",
    "%Y-%m-%d %H:%M:%S",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%a %b %d %Y",
)


def format_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return format_utc(utc_now())


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = " ".join(token.strip().split())
    if not cleaned:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    for fmt in _FREE_TEXT_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_datetime(value: Any) -> datetime | None:
    """Parse datetimes, dates and timestamp strings into aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        return _parse_datetime_token(value)
    return None


def normalize_timestamp(value: Any) -> str | None:
    """Convert mixed inputs into the `YYYY-MM-DDTHH:MM:SSZ` storage format."""
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return format_utc(parsed)


def normalize_date_key(value: Any) -> str | None:
    """Return a `YYYY-MM-DD` key for ISO or free-text dates, else None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None
    token = value.strip()
    if not token:
        return None
    if _DATE_ONLY_RE.match(token):
        try:
            return date.fromisoformat(token).isoformat()
        except ValueError:
            return None
    parsed = _parse_datetime_token(token)
    if parsed is None:
        return None
    # Date-bearing timestamps keep their calendar date as written.
    return parsed.date().isoformat()
