"""SQLite implementation of ActivityItemRepository."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

from ghactivity.db.query_builder import Clause, SqliteDialect

LIST_COLUMNS = (
    "assignee_ids",
    "reviewer_ids",
    "mentioned_ids",
    "commenter_ids",
    "reactor_ids",
    "maintainer_ids",
    "label_keys",
    "label_names",
)

ITEM_COLUMNS = (
    "id", "item_type", "number", "title", "url", "state", "status",
    "repository_id", "repository_name", "repository_name_with_owner", "author_id",
    *LIST_COLUMNS,
    "issue_type_id", "issue_type_name",
    "milestone_id", "milestone_title", "milestone_state", "milestone_due_on", "milestone_url",
    "issue_priority", "issue_weight", "issue_initiation_options", "issue_start_date",
    "tracked_issues_count", "tracked_in_issues_count",
    "issue_todo_status", "issue_todo_status_at", "issue_activity_status", "issue_activity_status_at",
    "issue_display_status", "issue_status_source", "issue_status_locked",
    "issue_work_started_at", "issue_work_completed_at",
    "body_text", "created_at", "updated_at", "closed_at", "merged_at", "snapshot_at",
)

STATUS_COLUMNS = (
    "issue_todo_status", "issue_todo_status_at", "issue_activity_status", "issue_activity_status_at",
    "issue_display_status", "issue_status_source", "issue_status_locked",
    "issue_work_started_at", "issue_work_completed_at",
)

ORDER_BY = "(updated_at IS NULL), updated_at DESC, created_at DESC, id DESC"


def format_item_row(row: Any) -> dict:
    item = dict(row)
    for column in LIST_COLUMNS:
        raw = item.get(column)
        if isinstance(raw, list):
            continue
        try:
            parsed = json.loads(raw) if raw else []
        except (TypeError, ValueError):
            parsed = []
        item[column] = [str(value) for value in parsed] if isinstance(parsed, list) else []
    item["issue_status_locked"] = bool(item.get("issue_status_locked"))
    return item


def _encode(column: str, value: Any) -> Any:
    if column in LIST_COLUMNS:
        return json.dumps(list(value or []))
    if column == "issue_status_locked":
        return 1 if value else 0
    return value


class SqliteActivityItemRepository:
    """Materialized activity snapshot storage and paginated queries."""

    dialect = SqliteDialect()

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    # ── Snapshot sources ──────────────────────────────────────────────

    async def _fetch(self, query: str, params: tuple = ()) -> list[dict]:
        async with self.db.execute(query, params) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def load_snapshot_sources(self) -> dict[str, list[dict]]:
        return {
            "repositories": await self._fetch("SELECT id, name, name_with_owner FROM repositories"),
            "users": await self._fetch("SELECT id, login FROM users"),
            "maintainers": await self._fetch("SELECT repository_id, user_id FROM repository_maintainers"),
            "issues": await self._fetch(
                """SELECT id, number, title, state, url, repository_id, author_id, data,
                          github_created_at, github_updated_at, github_closed_at
                   FROM issues"""
            ),
            "pull_requests": await self._fetch(
                """SELECT id, number, title, state, url, merged, repository_id, author_id, data,
                          github_created_at, github_updated_at, github_closed_at, github_merged_at
                   FROM pull_requests"""
            ),
            "review_requests": await self._fetch(
                "SELECT pull_request_id, reviewer_id, removed_at FROM review_requests"
            ),
            "reviews": await self._fetch("SELECT id, pull_request_id, author_id FROM reviews"),
            "comments": await self._fetch(
                """SELECT c.id, c.issue_id,
                          COALESCE(c.pull_request_id, r.pull_request_id) AS pull_request_id,
                          c.author_id, c.data, c.github_created_at
                   FROM comments c
                   LEFT JOIN reviews r ON r.id = c.review_id"""
            ),
            "reactions": await self._fetch("SELECT subject_id, user_id FROM reactions"),
        }

    # ── Writes ────────────────────────────────────────────────────────

    async def replace_all(self, items: list[dict]) -> int:
        """Swap the whole snapshot in one transaction."""
        columns = ", ".join(ITEM_COLUMNS)
        markers = ", ".join("?" for _ in ITEM_COLUMNS)
        rows = [tuple(_encode(column, item.get(column)) for column in ITEM_COLUMNS) for item in items]
        try:
            await self.db.execute("DELETE FROM activity_items")
            if rows:
                await self.db.executemany(
                    f"INSERT INTO activity_items ({columns}) VALUES ({markers})", rows
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return len(rows)

    async def update_issue_statuses(self, updates: list[dict]) -> int:
        if not updates:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in STATUS_COLUMNS)
        rows = [
            tuple(_encode(column, update.get(column)) for column in STATUS_COLUMNS) + (update["id"],)
            for update in updates
        ]
        await self.db.executemany(
            f"UPDATE activity_items SET {assignments} WHERE id = ? AND item_type = 'issue'", rows
        )
        await self.db.commit()
        return len(rows)

    async def update_project_fields(self, issue_id: str, fields: dict) -> None:
        await self.db.execute(
            """UPDATE activity_items
               SET issue_priority = ?, issue_weight = ?, issue_initiation_options = ?, issue_start_date = ?
               WHERE id = ?""",
            (
                fields.get("issue_priority"), fields.get("issue_weight"),
                fields.get("issue_initiation_options"), fields.get("issue_start_date"),
                issue_id,
            ),
        )
        await self.db.commit()

    # ── Reads ─────────────────────────────────────────────────────────

    def _where(self, where: Clause | None) -> tuple[str, list[Any]]:
        sql, params = self.dialect.render(where)
        return (f"WHERE {sql}" if sql else ""), params

    async def list_items(self, where: Clause | None, limit: int, offset: int) -> list[dict]:
        where_sql, params = self._where(where)
        async with self.db.execute(
            f"SELECT * FROM activity_items {where_sql} ORDER BY {ORDER_BY} LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ) as cur:
            return [format_item_row(r) for r in await cur.fetchall()]

    async def count_items(self, where: Clause | None) -> int:
        where_sql, params = self._where(where)
        async with self.db.execute(f"SELECT COUNT(*) FROM activity_items {where_sql}", params) as cur:
            row = await cur.fetchone()
            return int(row[0] if row else 0)

    async def count_newer_than(self, where: Clause | None, cutoff: str) -> int:
        where_sql, params = self._where(where)
        newer = "COALESCE(updated_at, created_at) > ?"
        where_sql = f"{where_sql} AND {newer}" if where_sql else f"WHERE {newer}"
        async with self.db.execute(
            f"SELECT COUNT(*) FROM activity_items {where_sql}", (*params, cutoff)
        ) as cur:
            row = await cur.fetchone()
            return int(row[0] if row else 0)

    async def page_index(self, where: Clause | None, per_page: int, max_entries: int) -> list[dict]:
        """First item of each page, in feed order."""
        where_sql, params = self._where(where)
        async with self.db.execute(
            f"""SELECT rn, id, updated_at, created_at FROM (
                    SELECT id, updated_at, created_at, ROW_NUMBER() OVER (ORDER BY {ORDER_BY}) AS rn
                    FROM activity_items {where_sql}
                ) AS ranked
                WHERE (rn - 1) % ? = 0
                ORDER BY rn
                LIMIT ?""",
            (*params, int(per_page), int(max_entries)),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def get_item(self, item_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM activity_items WHERE id = ?", (item_id,)) as cur:
            row = await cur.fetchone()
            return format_item_row(row) if row else None

    async def get_items(self, item_ids: list[str]) -> dict[str, dict]:
        ids = sorted(set(item_ids))
        if not ids:
            return {}
        markers = ", ".join("?" for _ in ids)
        async with self.db.execute(f"SELECT * FROM activity_items WHERE id IN ({markers})", tuple(ids)) as cur:
            return {row["id"]: format_item_row(row) for row in await cur.fetchall()}

    async def list_issue_ids(self) -> list[str]:
        async with self.db.execute("SELECT id FROM activity_items WHERE item_type = 'issue'") as cur:
            return [row["id"] for row in await cur.fetchall()]

    async def get_issue_payloads(self, issue_ids: list[str]) -> dict[str, Any]:
        if not issue_ids:
            return {}
        markers = ", ".join("?" for _ in issue_ids)
        async with self.db.execute(
            f"SELECT id, data FROM issues WHERE id IN ({markers})", tuple(issue_ids)
        ) as cur:
            return {row["id"]: row["data"] for row in await cur.fetchall()}

    async def list_item_comments(self, item_id: str) -> list[dict]:
        async with self.db.execute(
            """SELECT c.id, c.author_id, c.review_id, c.github_created_at, c.github_updated_at, c.data,
                      u.login AS author_login, u.name AS author_name, u.avatar_url AS author_avatar_url
               FROM comments c
               LEFT JOIN users u ON u.id = c.author_id
               WHERE c.issue_id = ? OR c.pull_request_id = ?
                  OR c.review_id IN (SELECT id FROM reviews WHERE pull_request_id = ?)
               ORDER BY c.github_created_at, c.id""",
            (item_id, item_id, item_id),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def lookup_users(self, user_ids: list[str]) -> dict[str, dict]:
        ids = sorted({user_id for user_id in user_ids if user_id})
        if not ids:
            return {}
        markers = ", ".join("?" for _ in ids)
        async with self.db.execute(
            f"SELECT id, login, name, avatar_url FROM users WHERE id IN ({markers})", tuple(ids)
        ) as cur:
            return {row["id"]: dict(row) for row in await cur.fetchall()}
