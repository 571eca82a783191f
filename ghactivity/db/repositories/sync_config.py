"""SQLite implementation of SyncConfigRepository and HolidayRepository."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite


def _json_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return []
    return [str(item) for item in parsed if item is not None] if isinstance(parsed, list) else []


def format_config_row(row: dict | None) -> dict[str, Any]:
    row = row or {}
    return {
        "org_name": row.get("org_name"),
        "timezone": row.get("timezone") or "UTC",
        "excluded_repository_ids": _json_list(row.get("excluded_repository_ids")),
        "excluded_user_ids": _json_list(row.get("excluded_user_ids")),
        "holiday_calendar_codes": _json_list(row.get("org_holiday_calendar_codes")),
        "todo_project_name": row.get("todo_project_name"),
        "last_sync_completed_at": row.get("last_sync_completed_at"),
        "last_successful_sync_at": row.get("last_successful_sync_at"),
    }


class SqliteSyncConfigRepository:
    """Read-only view of the organisation sync configuration and runs."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_config(self) -> dict[str, Any]:
        async with self.db.execute(
            "SELECT * FROM sync_config ORDER BY CASE WHEN id = 'default' THEN 0 ELSE 1 END LIMIT 1"
        ) as cur:
            row = await cur.fetchone()
        return format_config_row(dict(row) if row else None)

    async def get_latest_completed_run(self) -> dict | None:
        async with self.db.execute(
            """SELECT id, run_type, status, started_at, completed_at
               FROM sync_runs
               WHERE status IN ('success', 'completed') AND completed_at IS NOT NULL
               ORDER BY completed_at DESC, id DESC
               LIMIT 1"""
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None


class SqliteHolidayRepository:
    """Organisation holiday calendars."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_holiday_dates(self, calendar_codes: list[str]) -> list[str]:
        if not calendar_codes:
            return []
        markers = ", ".join("?" for _ in calendar_codes)
        async with self.db.execute(
            f"SELECT DISTINCT holiday_date FROM calendar_holidays WHERE calendar_code IN ({markers})",
            tuple(calendar_codes),
        ) as cur:
            return [row["holiday_date"] for row in await cur.fetchall()]

    async def upsert_calendar(self, calendar: dict) -> int:
        await self.db.execute(
            """INSERT INTO holiday_calendars (code, label, country_label, region_label, sort_order)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(code) DO UPDATE SET
                 label=excluded.label, country_label=excluded.country_label,
                 region_label=excluded.region_label, sort_order=excluded.sort_order""",
            (
                calendar["code"], calendar["label"],
                calendar.get("country_label"), calendar.get("region_label"),
                calendar.get("sort_order", 0),
            ),
        )
        inserted = 0
        for holiday in calendar.get("holidays", []):
            cur = await self.db.execute(
                """INSERT OR IGNORE INTO calendar_holidays (calendar_code, holiday_date, weekday, name, note)
                   VALUES (?, ?, strftime('%w', ?), ?, ?)""",
                (calendar["code"], holiday["date"], holiday["date"], holiday["name"], holiday.get("note")),
            )
            inserted += max(0, cur.rowcount or 0)
            await cur.close()
        await self.db.commit()
        return inserted
