"""PostgreSQL implementation of IssueStatusRepository and ProjectOverrideRepository."""
from __future__ import annotations

from collections import defaultdict

import asyncpg

from ghactivity.date_utils import utc_now_iso


class PostgresIssueStatusRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def list_events(self, issue_ids: list[str] | None = None) -> dict[str, list[dict]]:
        if issue_ids is not None and not issue_ids:
            return {}
        query = "SELECT issue_id, status, occurred_at, source FROM activity_issue_status_history"
        args: list = []
        if issue_ids is not None:
            query += " WHERE issue_id = ANY($1::text[])"
            args.append(list(issue_ids))
        query += " ORDER BY issue_id, occurred_at, id"
        grouped: dict[str, list[dict]] = defaultdict(list)
        for row in await self.db.fetch(query, *args):
            grouped[row["issue_id"]].append(dict(row))
        return dict(grouped)

    async def record_status(
        self,
        issue_id: str,
        status: str,
        occurred_at: str | None = None,
        source: str = "manual",
    ) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO activity_issue_status_history (issue_id, status, occurred_at, source, inserted_at)
               VALUES ($1, $2, $3, $4, $5)
               ON CONFLICT (issue_id, status, source, occurred_at) DO NOTHING""",
            issue_id, status, occurred_at or now, source, now,
        )

    async def clear_statuses(self, issue_id: str) -> int:
        status = await self.db.execute(
            "DELETE FROM activity_issue_status_history WHERE issue_id = $1", issue_id
        )
        return int(status.split()[-1]) if status else 0

    async def list_automation_candidates(self) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT pri.issue_id AS issue_id,
                      i.data AS issue_data,
                      MIN(pr.github_created_at) AS first_pr_created_at,
                      MIN(CASE
                            WHEN pr.merged IS TRUE OR pr.github_merged_at IS NOT NULL
                            THEN COALESCE(pr.github_merged_at, pr.github_closed_at)
                          END) AS first_merged_at
               FROM pull_request_issues pri
               JOIN pull_requests pr ON pr.id = pri.pull_request_id
               JOIN issues i ON i.id = pri.issue_id
               GROUP BY pri.issue_id, i.data
               ORDER BY pri.issue_id"""
        )
        return [dict(r) for r in rows]

    async def insert_events(self, events: list[tuple[str, str, str]], source: str = "activity") -> int:
        if not events:
            return 0
        now = utc_now_iso()
        inserted = 0
        async with self.db.acquire() as conn:
            async with conn.transaction():
                for issue_id, status, occurred_at in events:
                    result = await conn.execute(
                        """INSERT INTO activity_issue_status_history (issue_id, status, occurred_at, source, inserted_at)
                           VALUES ($1, $2, $3, $4, $5)
                           ON CONFLICT (issue_id, status, source, occurred_at) DO NOTHING""",
                        issue_id, status, occurred_at, source, now,
                    )
                    inserted += int(result.split()[-1]) if result else 0
        return inserted


class PostgresProjectOverrideRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get_overrides(self, issue_ids: list[str] | None = None) -> dict[str, dict]:
        if issue_ids is None:
            rows = await self.db.fetch("SELECT * FROM activity_issue_project_overrides")
        elif not issue_ids:
            return {}
        else:
            rows = await self.db.fetch(
                "SELECT * FROM activity_issue_project_overrides WHERE issue_id = ANY($1::text[])",
                list(issue_ids),
            )
        return {row["issue_id"]: dict(row) for row in rows}

    async def upsert_overrides(self, issue_id: str, values: dict) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO activity_issue_project_overrides (
                   issue_id, priority_value, priority_updated_at, weight_value, weight_updated_at,
                   initiation_value, initiation_updated_at, start_date_value, start_date_updated_at, updated_at
               ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
               ON CONFLICT (issue_id) DO UPDATE SET
                 priority_value=EXCLUDED.priority_value, priority_updated_at=EXCLUDED.priority_updated_at,
                 weight_value=EXCLUDED.weight_value, weight_updated_at=EXCLUDED.weight_updated_at,
                 initiation_value=EXCLUDED.initiation_value, initiation_updated_at=EXCLUDED.initiation_updated_at,
                 start_date_value=EXCLUDED.start_date_value, start_date_updated_at=EXCLUDED.start_date_updated_at,
                 updated_at=EXCLUDED.updated_at""",
            issue_id,
            values.get("priority_value"), values.get("priority_updated_at"),
            values.get("weight_value"), values.get("weight_updated_at"),
            values.get("initiation_value"), values.get("initiation_updated_at"),
            values.get("start_date_value"), values.get("start_date_updated_at"),
            now,
        )

    async def clear_overrides(self, issue_id: str) -> None:
        await self.db.execute("DELETE FROM activity_issue_project_overrides WHERE issue_id = $1", issue_id)
