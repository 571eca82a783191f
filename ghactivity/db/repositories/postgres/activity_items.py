"""PostgreSQL implementation of ActivityItemRepository."""
from __future__ import annotations

from typing import Any

import asyncpg

from ghactivity.db.query_builder import Clause, PostgresDialect
from ghactivity.db.repositories.activity_items import (
    ITEM_COLUMNS,
    LIST_COLUMNS,
    STATUS_COLUMNS,
    format_item_row,
)

ORDER_BY = "updated_at DESC NULLS LAST, created_at DESC, id DESC"


def _encode(column: str, value: Any) -> Any:
    if column in LIST_COLUMNS:
        return [str(v) for v in (value or [])]
    if column == "issue_status_locked":
        return bool(value)
    return value


class PostgresActivityItemRepository:
    dialect = PostgresDialect()

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def _fetch(self, query: str, *args: Any) -> list[dict]:
        return [dict(r) for r in await self.db.fetch(query, *args)]

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

    async def replace_all(self, items: list[dict]) -> int:
        columns = ", ".join(ITEM_COLUMNS)
        markers = ", ".join(f"${index}" for index in range(1, len(ITEM_COLUMNS) + 1))
        rows = [tuple(_encode(column, item.get(column)) for column in ITEM_COLUMNS) for item in items]
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM activity_items")
                if rows:
                    await conn.executemany(
                        f"INSERT INTO activity_items ({columns}) VALUES ({markers})", rows
                    )
        return len(rows)

    async def update_issue_statuses(self, updates: list[dict]) -> int:
        if not updates:
            return 0
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(STATUS_COLUMNS, start=1))
        id_marker = f"${len(STATUS_COLUMNS) + 1}"
        rows = [
            tuple(_encode(column, update.get(column)) for column in STATUS_COLUMNS) + (update["id"],)
            for update in updates
        ]
        await self.db.executemany(
            f"UPDATE activity_items SET {assignments} WHERE id = {id_marker} AND item_type = 'issue'", rows
        )
        return len(rows)

    async def update_project_fields(self, issue_id: str, fields: dict) -> None:
        await self.db.execute(
            """UPDATE activity_items
               SET issue_priority = $1, issue_weight = $2, issue_initiation_options = $3, issue_start_date = $4
               WHERE id = $5""",
            fields.get("issue_priority"), fields.get("issue_weight"),
            fields.get("issue_initiation_options"), fields.get("issue_start_date"),
            issue_id,
        )

    def _where(self, where: Clause | None) -> tuple[str, list[Any]]:
        sql, params = self.dialect.render(where)
        return (f"WHERE {sql}" if sql else ""), params

    async def list_items(self, where: Clause | None, limit: int, offset: int) -> list[dict]:
        where_sql, params = self._where(where)
        n = len(params)
        rows = await self.db.fetch(
            f"SELECT * FROM activity_items {where_sql} ORDER BY {ORDER_BY} LIMIT ${n + 1} OFFSET ${n + 2}",
            *params, int(limit), int(offset),
        )
        return [format_item_row(r) for r in rows]

    async def count_items(self, where: Clause | None) -> int:
        where_sql, params = self._where(where)
        return int(await self.db.fetchval(f"SELECT COUNT(*) FROM activity_items {where_sql}", *params) or 0)

    async def count_newer_than(self, where: Clause | None, cutoff: str) -> int:
        where_sql, params = self._where(where)
        newer = f"COALESCE(updated_at, created_at) > ${len(params) + 1}"
        where_sql = f"{where_sql} AND {newer}" if where_sql else f"WHERE {newer}"
        return int(
            await self.db.fetchval(f"SELECT COUNT(*) FROM activity_items {where_sql}", *params, cutoff) or 0
        )

    async def page_index(self, where: Clause | None, per_page: int, max_entries: int) -> list[dict]:
        where_sql, params = self._where(where)
        n = len(params)
        return await self._fetch(
            f"""SELECT rn, id, updated_at, created_at FROM (
                    SELECT id, updated_at, created_at, ROW_NUMBER() OVER (ORDER BY {ORDER_BY}) AS rn
                    FROM activity_items {where_sql}
                ) AS ranked
                WHERE (rn - 1) % ${n + 1} = 0
                ORDER BY rn
                LIMIT ${n + 2}""",
            *params, int(per_page), int(max_entries),
        )

    async def get_item(self, item_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM activity_items WHERE id = $1", item_id)
        return format_item_row(row) if row else None

    async def get_items(self, item_ids: list[str]) -> dict[str, dict]:
        ids = sorted(set(item_ids))
        if not ids:
            return {}
        rows = await self.db.fetch("SELECT * FROM activity_items WHERE id = ANY($1::text[])", ids)
        return {row["id"]: format_item_row(row) for row in rows}

    async def list_issue_ids(self) -> list[str]:
        rows = await self.db.fetch("SELECT id FROM activity_items WHERE item_type = 'issue'")
        return [row["id"] for row in rows]

    async def get_issue_payloads(self, issue_ids: list[str]) -> dict[str, Any]:
        if not issue_ids:
            return {}
        rows = await self.db.fetch("SELECT id, data FROM issues WHERE id = ANY($1::text[])", list(issue_ids))
        return {row["id"]: row["data"] for row in rows}

    async def list_item_comments(self, item_id: str) -> list[dict]:
        return await self._fetch(
            """SELECT c.id, c.author_id, c.review_id, c.github_created_at, c.github_updated_at, c.data,
                      u.login AS author_login, u.name AS author_name, u.avatar_url AS author_avatar_url
               FROM comments c
               LEFT JOIN users u ON u.id = c.author_id
               WHERE c.issue_id = $1 OR c.pull_request_id = $1
                  OR c.review_id IN (SELECT id FROM reviews WHERE pull_request_id = $1)
               ORDER BY c.github_created_at, c.id""",
            item_id,
        )

    async def lookup_users(self, user_ids: list[str]) -> dict[str, dict]:
        ids = sorted({user_id for user_id in user_ids if user_id})
        if not ids:
            return {}
        rows = await self.db.fetch(
            "SELECT id, login, name, avatar_url FROM users WHERE id = ANY($1::text[])", ids
        )
        return {row["id"]: dict(row) for row in rows}
