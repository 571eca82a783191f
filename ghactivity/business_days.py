"""Business-day arithmetic against organisation holiday calendars.

Durations use a 24h/day model: every calendar day that is neither a weekend
nor a holiday contributes the hours of ``[start, end)`` that fall inside it,
and business days are whole multiples of 24 such hours. Day boundaries are
taken in the organisation's time zone.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from ghactivity.date_utils import normalize_date_key, parse_datetime

logger = logging.getLogger("ghactivity.calendar")

EMPTY_HOLIDAY_SET: frozenset[str] = frozenset()
_TZ_SUFFIXES = (" UTC", " GMT", " Z")


def resolve_timezone(name: str | None) -> tzinfo:
    token = (name or "").strip()
    if not token:
        return timezone.utc
    try:
        return ZoneInfo(token)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, falling back to UTC", token)
        return timezone.utc


def normalize_holiday_date(value: Any) -> str | None:
    """Return `YYYY-MM-DD` for ISO or free-text holiday dates."""
    if isinstance(value, str):
        token = value.strip()
        for suffix in _TZ_SUFFIXES:
            if token.upper().endswith(suffix):
                token = token[: -len(suffix)].strip()
        value = token
    return normalize_date_key(value)


def build_holiday_set(values: Iterable[Any]) -> frozenset[str]:
    keys: set[str] = set()
    for value in values or []:
        key = normalize_holiday_date(value)
        if key is None:
            logger.debug("Dropping unparseable holiday date: %r", value)
            continue
        keys.add(key)
    return frozenset(keys)


@lru_cache(maxsize=64)
def _holiday_dates(holidays: frozenset[str]) -> tuple[date, ...]:
    parsed: list[date] = []
    for key in holidays:
        try:
            parsed.append(date.fromisoformat(key))
        except ValueError:
            continue
    return tuple(sorted(parsed))


def is_business_day(day: date, holidays: frozenset[str] = EMPTY_HOLIDAY_SET) -> bool:
    if day.weekday() >= 5:
        return False
    return day.isoformat() not in holidays


def _weekday_count(first: date, stop: date) -> int:
    """Count Mon-Fri dates in ``[first, stop)``."""
    days = (stop - first).days
    if days <= 0:
        return 0
    weeks, remainder = divmod(days, 7)
    count = weeks * 5
    start_weekday = first.weekday()
    for offset in range(remainder):
        if (start_weekday + offset) % 7 < 5:
            count += 1
    return count


def _full_business_days(first: date, stop: date, holidays: frozenset[str]) -> int:
    count = _weekday_count(first, stop)
    if holidays:
        for holiday in _holiday_dates(holidays):
            if first <= holiday < stop and holiday.weekday() < 5:
                count -= 1
    return max(0, count)


def _local_midnight(day: date, zone: tzinfo) -> datetime:
    return datetime.combine(day, time.min).replace(tzinfo=zone)


def business_hours_between(
    start: Any,
    end: Any,
    holidays: frozenset[str] = EMPTY_HOLIDAY_SET,
    tz: tzinfo | None = None,
) -> float | None:
    start_dt = parse_datetime(start)
    end_dt = parse_datetime(end)
    if start_dt is None or end_dt is None:
        return None
    if end_dt <= start_dt:
        return 0.0

    zone = tz or timezone.utc
    local_start = start_dt.astimezone(zone)
    local_end = end_dt.astimezone(zone)
    first_day = local_start.date()
    last_day = local_end.date()

    if first_day == last_day:
        if not is_business_day(first_day, holidays):
            return 0.0
        return (end_dt - start_dt).total_seconds() / 3600.0

    total_seconds = 0.0
    if is_business_day(first_day, holidays):
        next_midnight = _local_midnight(first_day + timedelta(days=1), zone)
        total_seconds += (next_midnight.astimezone(timezone.utc) - start_dt).total_seconds()
    if is_business_day(last_day, holidays):
        midnight = _local_midnight(last_day, zone)
        total_seconds += (end_dt - midnight.astimezone(timezone.utc)).total_seconds()

    # Whole days in between count as 24h regardless of DST shifts.
    full_days = _full_business_days(first_day + timedelta(days=1), last_day, holidays)
    total_seconds += full_days * 86400.0
    return max(0.0, total_seconds) / 3600.0


def business_days_between(
    start: Any,
    end: Any,
    holidays: frozenset[str] = EMPTY_HOLIDAY_SET,
    tz: tzinfo | None = None,
) -> int | None:
    hours = business_hours_between(start, end, holidays, tz)
    if hours is None:
        return None
    # Round away float noise before flooring.
    return int(math.floor(round(hours, 6) / 24.0))


def load_holiday_calendar_file(path: str | Path) -> list[dict[str, Any]]:
    """Read a YAML calendar seed: ``calendars: [{code, label, holidays: [...]}]``."""
    file_path = Path(path)
    if not file_path.exists():
        logger.warning("Holiday calendar file not found: %s", file_path)
        return []
    with file_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    calendars = payload.get("calendars") if isinstance(payload, dict) else None
    if not isinstance(calendars, list):
        logger.warning("Holiday calendar file %s has no 'calendars' list", file_path)
        return []

    result: list[dict[str, Any]] = []
    for index, raw in enumerate(calendars):
        if not isinstance(raw, dict) or not str(raw.get("code") or "").strip():
            continue
        holidays: list[dict[str, Any]] = []
        for entry in raw.get("holidays") or []:
            if isinstance(entry, dict):
                key = normalize_holiday_date(entry.get("date"))
                name = str(entry.get("name") or "").strip()
            else:
                key = normalize_holiday_date(entry)
                name = ""
            if key is None:
                logger.debug("Skipping holiday entry without a valid date: %r", entry)
                continue
            holidays.append({"date": key, "name": name or key, "note": (entry.get("note") if isinstance(entry, dict) else None)})
        result.append({
            "code": str(raw["code"]).strip(),
            "label": str(raw.get("label") or raw["code"]).strip(),
            "country_label": raw.get("countryLabel"),
            "region_label": raw.get("regionLabel"),
            "sort_order": int(raw.get("sortOrder", index)),
            "holidays": holidays,
        })
    return result


async def load_holiday_set(db: Any, calendar_codes: Iterable[str]) -> frozenset[str]:
    """Merged holiday dates of the given organisation calendars."""
    from ghactivity.db.factory import get_holiday_repository

    codes = [code for code in (str(c).strip() for c in calendar_codes or []) if code]
    if not codes:
        return EMPTY_HOLIDAY_SET
    dates = await get_holiday_repository(db).list_holiday_dates(codes)
    return build_holiday_set(dates)


async def seed_holiday_calendars(db: Any, path: str | Path) -> int:
    """Upsert the calendars of a YAML seed file; returns inserted holiday rows."""
    from ghactivity.db.factory import get_holiday_repository

    repo = get_holiday_repository(db)
    inserted = 0
    for calendar in load_holiday_calendar_file(path):
        inserted += await repo.upsert_calendar(calendar)
    if inserted:
        logger.info("Seeded %d holiday entries from %s", inserted, path)
    return inserted
