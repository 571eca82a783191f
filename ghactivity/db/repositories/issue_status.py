"""SQLite implementation of IssueStatusRepository and ProjectOverrideRepository."""
from __future__ import annotations

from collections import defaultdict

import aiosqlite

from ghactivity.date_utils import utc_now_iso


class SqliteIssueStatusRepository:
    """Append-only activity status events for issues."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_events(self, issue_ids: list[str] | None = None) -> dict[str, list[dict]]:
        query = "SELECT issue_id, status, occurred_at, source FROM activity_issue_status_history"
        params: tuple = ()
        if issue_ids is not None:
            if not issue_ids:
                return {}
            markers = ", ".join("?" for _ in issue_ids)
            query += f" WHERE issue_id IN ({markers})"
            params = tuple(issue_ids)
        query += " ORDER BY issue_id, occurred_at, id"
        grouped: dict[str, list[dict]] = defaultdict(list)
        async with self.db.execute(query, params) as cur:
            for row in await cur.fetchall():
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
            """INSERT OR IGNORE INTO activity_issue_status_history (issue_id, status, occurred_at, source, inserted_at)
               VALUES (?, ?, ?, ?, ?)""",
            (issue_id, status, occurred_at or now, source, now),
        )
        await self.db.commit()

    async def clear_statuses(self, issue_id: str) -> int:
        cur = await self.db.execute(
            "DELETE FROM activity_issue_status_history WHERE issue_id = ?", (issue_id,)
        )
        deleted = cur.rowcount or 0
        await cur.close()
        await self.db.commit()
        return deleted

    async def list_automation_candidates(self) -> list[dict]:
        """Linked issues with the first PR creation and first merge times."""
        async with self.db.execute(
            """SELECT pri.issue_id AS issue_id,
                      i.data AS issue_data,
                      MIN(pr.github_created_at) AS first_pr_created_at,
                      MIN(CASE
                            WHEN pr.merged = 1 OR pr.github_merged_at IS NOT NULL
                            THEN COALESCE(pr.github_merged_at, pr.github_closed_at)
                          END) AS first_merged_at
               FROM pull_request_issues pri
               JOIN pull_requests pr ON pr.id = pri.pull_request_id
               JOIN issues i ON i.id = pri.issue_id
               GROUP BY pri.issue_id, i.data
               ORDER BY pri.issue_id"""
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def insert_events(self, events: list[tuple[str, str, str]], source: str = "activity") -> int:
        """Insert (issue_id, status, occurred_at) rows, skipping existing ones."""
        if not events:
            return 0
        now = utc_now_iso()
        inserted = 0
        for issue_id, status, occurred_at in events:
            cur = await self.db.execute(
                """INSERT OR IGNORE INTO activity_issue_status_history (issue_id, status, occurred_at, source, inserted_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (issue_id, status, occurred_at, source, now),
            )
            inserted += max(0, cur.rowcount or 0)
            await cur.close()
        await self.db.commit()
        return inserted


class SqliteProjectOverrideRepository:
    """Locally edited project field values for issues."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_overrides(self, issue_ids: list[str] | None = None) -> dict[str, dict]:
        query = "SELECT * FROM activity_issue_project_overrides"
        params: tuple = ()
        if issue_ids is not None:
            if not issue_ids:
                return {}
            markers = ", ".join("?" for _ in issue_ids)
            query += f" WHERE issue_id IN ({markers})"
            params = tuple(issue_ids)
        async with self.db.execute(query, params) as cur:
            return {row["issue_id"]: dict(row) for row in await cur.fetchall()}

    async def upsert_overrides(self, issue_id: str, values: dict) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO activity_issue_project_overrides (
                   issue_id, priority_value, priority_updated_at, weight_value, weight_updated_at,
                   initiation_value, initiation_updated_at, start_date_value, start_date_updated_at, updated_at
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(issue_id) DO UPDATE SET
                 priority_value=excluded.priority_value, priority_updated_at=excluded.priority_updated_at,
                 weight_value=excluded.weight_value, weight_updated_at=excluded.weight_updated_at,
                 initiation_value=excluded.initiation_value, initiation_updated_at=excluded.initiation_updated_at,
                 start_date_value=excluded.start_date_value, start_date_updated_at=excluded.start_date_updated_at,
                 updated_at=excluded.updated_at""",
            (
                issue_id,
                values.get("priority_value"), values.get("priority_updated_at"),
                values.get("weight_value"), values.get("weight_updated_at"),
                values.get("initiation_value"), values.get("initiation_updated_at"),
                values.get("start_date_value"), values.get("start_date_updated_at"),
                now,
            ),
        )
        await self.db.commit()

    async def clear_overrides(self, issue_id: str) -> None:
        await self.db.execute(
            "DELETE FROM activity_issue_project_overrides WHERE issue_id = ?", (issue_id,)
        )
        await self.db.commit()
