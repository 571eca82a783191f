"""PostgreSQL implementation of SyncConfigRepository and HolidayRepository."""
from __future__ import annotations

from typing import Any

import asyncpg

from ghactivity.db.repositories.sync_config import format_config_row


class PostgresSyncConfigRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get_config(self) -> dict[str, Any]:
        row = await self.db.fetchrow(
            "SELECT * FROM sync_config ORDER BY CASE WHEN id = 'default' THEN 0 ELSE 1 END LIMIT 1"
        )
        return format_config_row(dict(row) if row else None)

    async def get_latest_completed_run(self) -> dict | None:
        row = await self.db.fetchrow(
            """SELECT id, run_type, status, started_at, completed_at
               FROM sync_runs
               WHERE status IN ('success', 'completed') AND completed_at IS NOT NULL
               ORDER BY completed_at DESC, id DESC
               LIMIT 1"""
        )
        return dict(row) if row else None


class PostgresHolidayRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def list_holiday_dates(self, calendar_codes: list[str]) -> list[str]:
        if not calendar_codes:
            return []
        rows = await self.db.fetch(
            "SELECT DISTINCT holiday_date FROM calendar_holidays WHERE calendar_code = ANY($1::text[])",
            list(calendar_codes),
        )
        return [row["holiday_date"] for row in rows]

    async def upsert_calendar(self, calendar: dict) -> int:
        inserted = 0
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """INSERT INTO holiday_calendars (code, label, country_label, region_label, sort_order)
                       VALUES ($1, $2, $3, $4, $5)
                       ON CONFLICT (code) DO UPDATE SET
                         label=EXCLUDED.label, country_label=EXCLUDED.country_label,
                         region_label=EXCLUDED.region_label, sort_order=EXCLUDED.sort_order""",
                    calendar["code"], calendar["label"],
                    calendar.get("country_label"), calendar.get("region_label"),
                    calendar.get("sort_order", 0),
                )
                for holiday in calendar.get("holidays", []):
                    status = await conn.execute(
                        """INSERT INTO calendar_holidays (calendar_code, holiday_date, weekday, name, note)
                           VALUES ($1, $2, EXTRACT(DOW FROM $2::date)::text, $3, $4)
                           ON CONFLICT (calendar_code, holiday_date, name) DO NOTHING""",
                        calendar["code"], holiday["date"], holiday["name"], holiday.get("note"),
                    )
                    inserted += int(status.split()[-1]) if status else 0
        return inserted
