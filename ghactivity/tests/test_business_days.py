import tempfile
import unittest
from pathlib import Path
from zoneinfo import ZoneInfo

import aiosqlite

from ghactivity.business_days import (
    build_holiday_set,
    business_days_between,
    business_hours_between,
    load_holiday_set,
    normalize_holiday_date,
    resolve_timezone,
    seed_holiday_calendars,
)
from ghactivity.db.sqlite_migrations import run_migrations


class BusinessHoursTests(unittest.TestCase):
    def test_week_with_midweek_holiday_counts_three_days(self) -> None:
        holidays = build_holiday_set(["2024-05-01"])
        hours = business_hours_between("2024-04-29T00:00:00Z", "2024-05-03T00:00:00Z", holidays)
        self.assertEqual(hours, 72.0)
        self.assertEqual(
            business_days_between("2024-04-29T00:00:00Z", "2024-05-03T00:00:00Z", holidays),
            3,
        )

    def test_weekend_is_skipped(self) -> None:
        # Friday noon to Monday noon is 12h Friday + 12h Monday.
        self.assertEqual(
            business_hours_between("2024-05-03T12:00:00Z", "2024-05-06T12:00:00Z"),
            24.0,
        )
        self.assertEqual(business_days_between("2024-05-03T12:00:00Z", "2024-05-06T12:00:00Z"), 1)

    def test_full_weeks(self) -> None:
        self.assertEqual(business_hours_between("2024-04-29T00:00:00Z", "2024-05-06T00:00:00Z"), 120.0)
        self.assertEqual(business_hours_between("2024-04-29T00:00:00Z", "2024-05-10T00:00:00Z"), 216.0)
        self.assertEqual(business_days_between("2024-04-29T00:00:00Z", "2024-05-10T00:00:00Z"), 9)

    def test_same_instant_and_reversed_ranges_are_zero(self) -> None:
        self.assertEqual(business_days_between("2024-04-29T10:00:00Z", "2024-04-29T10:00:00Z"), 0)
        self.assertEqual(business_hours_between("2024-05-03T00:00:00Z", "2024-04-29T00:00:00Z"), 0.0)
        self.assertEqual(business_days_between("2024-05-03T00:00:00Z", "2024-04-29T00:00:00Z"), 0)

    def test_unknown_inputs_propagate_none(self) -> None:
        self.assertIsNone(business_hours_between(None, "2024-05-03T00:00:00Z"))
        self.assertIsNone(business_days_between("2024-05-03T00:00:00Z", "not a date"))

    def test_range_inside_a_weekend_day(self) -> None:
        self.assertEqual(business_hours_between("2024-05-04T01:00:00Z", "2024-05-04T23:00:00Z"), 0.0)

    def test_day_boundaries_follow_the_organisation_time_zone(self) -> None:
        zone = ZoneInfo("Asia/Seoul")
        # 2024-05-03T16:00Z is Saturday 01:00 in Seoul, so Friday ends at 15:00Z.
        hours = business_hours_between("2024-05-03T12:00:00Z", "2024-05-03T16:00:00Z", tz=zone)
        self.assertEqual(hours, 3.0)

    def test_non_negative_for_arbitrary_holiday_sets(self) -> None:
        holidays = build_holiday_set(["2024-04-29", "2024-04-30", "2024-05-01", "2024-05-02", "2024-05-03"])
        self.assertEqual(business_days_between("2024-04-29T00:00:00Z", "2024-05-04T00:00:00Z", holidays), 0)


class HolidayNormalizationTests(unittest.TestCase):
    def test_accepts_iso_and_free_text_dates(self) -> None:
        self.assertEqual(normalize_holiday_date("2024-05-01"), "2024-05-01")
        self.assertEqual(normalize_holiday_date("2024-05-01T00:00:00Z"), "2024-05-01")
        self.assertEqual(normalize_holiday_date("May 1, 2024"), "2024-05-01")
        self.assertEqual(normalize_holiday_date("Wed May 01 2024 UTC"), "2024-05-01")

    def test_unparseable_dates_are_dropped(self) -> None:
        holidays = build_holiday_set(["2024-05-01", "someday", None, "2024-12-25"])
        self.assertEqual(holidays, frozenset({"2024-05-01", "2024-12-25"}))

    def test_unknown_time_zone_falls_back_to_utc(self) -> None:
        self.assertEqual(resolve_timezone("Mars/Olympus").utcoffset(None).total_seconds(), 0)
        self.assertEqual(str(resolve_timezone("Asia/Seoul")), "Asia/Seoul")


class HolidayCalendarSeedTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_seed_file_populates_holiday_set(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "holidays.yaml"
            path.write_text(
                "calendars:\n"
                "  - code: kr\n"
                "    label: Korea\n"
                "    holidays:\n"
                "      - date: 2024-05-01\n"
                "        name: Labour Day\n"
                "      - date: May 6, 2024\n"
                "        name: Children's Day (observed)\n"
                "      - date: whenever\n"
                "        name: Broken\n",
                encoding="utf-8",
            )
            inserted = await seed_holiday_calendars(self.db, path)

        self.assertEqual(inserted, 2)
        self.assertEqual(await load_holiday_set(self.db, ["kr"]), frozenset({"2024-05-01", "2024-05-06"}))
        self.assertEqual(await load_holiday_set(self.db, []), frozenset())

    async def test_missing_seed_file_is_not_fatal(self) -> None:
        self.assertEqual(await seed_holiday_calendars(self.db, "/nonexistent/holidays.yaml"), 0)


if __name__ == "__main__":
    unittest.main()
