#!/usr/bin/env python3
"""Run one activity job against the configured database.

Usage:
  python -m ghactivity.scripts.activity_jobs automation [--force]
  python -m ghactivity.scripts.activity_jobs refresh-snapshot
  python -m ghactivity.scripts.activity_jobs refresh-caches
  python -m ghactivity.scripts.activity_jobs classify-mentions [--force]
  python -m ghactivity.scripts.activity_jobs attention [--use-classifier]
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging

from ghactivity import config
from ghactivity.business_days import seed_holiday_calendars
from ghactivity.db import connection, migrations
from ghactivity.db.job_runner import ActivityJobRunner
from ghactivity.services.attention import get_attention_insights


async def _run(command: str, force: bool, use_classifier: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        if config.HOLIDAYS_FILE:
            await seed_holiday_calendars(db, config.HOLIDAYS_FILE)
        runner = ActivityJobRunner(db)
        if command == "automation":
            result = await runner.run_automation(force=force, trigger="cli")
        elif command == "refresh-snapshot":
            result = await runner.refresh_snapshot(trigger="cli")
        elif command == "refresh-caches":
            result = await runner.refresh_caches(trigger="cli")
        elif command == "classify-mentions":
            result = await runner.classify_mentions(force=force, trigger="cli")
        else:
            result = await get_attention_insights(db, use_classifier=use_classifier)
        print(json.dumps(result, indent=2, sort_keys=True))
        return 0
    finally:
        await connection.close_connection()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    subparsers = parser.add_subparsers(dest="command", required=True)
    automation = subparsers.add_parser("automation", help="Derive issue statuses from linked pull requests")
    automation.add_argument("--force", action="store_true", help="Ignore the sync watermark")
    subparsers.add_parser("refresh-snapshot", help="Rebuild the activity item snapshot")
    subparsers.add_parser("refresh-caches", help="Rebuild filter options and link caches")
    classify = subparsers.add_parser("classify-mentions", help="Classify pending unanswered mentions")
    classify.add_argument("--force", action="store_true", help="Re-evaluate mentions with a current verdict")
    attention = subparsers.add_parser("attention", help="Print attention insights")
    attention.add_argument("--use-classifier", action="store_true", help="Drop mentions judged informational")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_run(args.command, getattr(args, "force", False), getattr(args, "use_classifier", False)))


if __name__ == "__main__":
    raise SystemExit(main())
