"""SQLite implementation of ActivityCacheRepository (filter options and link maps)."""
from __future__ import annotations

import json
from collections import defaultdict
from typing import Any, Sequence

import aiosqlite

from ghactivity.db.repositories.cache_state import SqliteCacheStateRepository

ISSUE_LINK_COLUMNS = (
    "issue_id", "pull_request_id", "pr_number", "pr_title", "pr_state", "pr_status", "pr_url",
    "pr_repository_id", "pr_repository_name", "pr_repository_name_with_owner", "pr_author_id",
    "pr_merged_at", "pr_closed_at", "pr_updated_at",
)

PULL_REQUEST_LINK_COLUMNS = (
    "pull_request_id", "issue_id", "issue_number", "issue_title", "issue_state", "issue_url", "issue_repository",
)

_ISSUE_LINK_SELECT = """
    SELECT pri.issue_id AS issue_id,
           pr.id AS pull_request_id,
           pr.number AS pr_number,
           pr.title AS pr_title,
           pr.state AS pr_state,
           CASE
             WHEN pr.merged = 1 OR pr.github_merged_at IS NOT NULL THEN 'merged'
             WHEN lower(COALESCE(pr.state, '')) = 'closed' OR pr.github_closed_at IS NOT NULL THEN 'closed'
             ELSE 'open'
           END AS pr_status,
           pr.url AS pr_url,
           pr.repository_id AS pr_repository_id,
           repo.name AS pr_repository_name,
           repo.name_with_owner AS pr_repository_name_with_owner,
           pr.author_id AS pr_author_id,
           pr.github_merged_at AS pr_merged_at,
           pr.github_closed_at AS pr_closed_at,
           pr.github_updated_at AS pr_updated_at
    FROM pull_request_issues pri
    JOIN pull_requests pr ON pr.id = pri.pull_request_id
    LEFT JOIN repositories repo ON repo.id = pr.repository_id
"""

_PULL_REQUEST_LINK_SELECT = """
    SELECT pri.pull_request_id AS pull_request_id,
           pri.issue_id AS issue_id,
           COALESCE(i.number, pri.issue_number) AS issue_number,
           COALESCE(i.title, pri.issue_title) AS issue_title,
           COALESCE(i.state, pri.issue_state) AS issue_state,
           COALESCE(i.url, pri.issue_url) AS issue_url,
           COALESCE(repo.name_with_owner, pri.issue_repository) AS issue_repository
    FROM pull_request_issues pri
    LEFT JOIN issues i ON i.id = pri.issue_id
    LEFT JOIN repositories repo ON repo.id = i.repository_id
"""


def _group(rows: list[dict], key: str) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = defaultdict(list)
    for row in rows:
        grouped[row[key]].append(row)
    return dict(grouped)


class SqliteActivityCacheRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def _fetch(self, query: str, params: tuple = ()) -> list[dict]:
        async with self.db.execute(query, params) as cur:
            return [dict(r) for r in await cur.fetchall()]

    # ── Sources ───────────────────────────────────────────────────────

    async def load_option_sources(self) -> dict[str, list[dict]]:
        return {
            "repositories": await self._fetch(
                "SELECT id, name, name_with_owner FROM repositories ORDER BY lower(name_with_owner)"
            ),
            "users": await self._fetch("SELECT id, login, name, avatar_url FROM users"),
            "issues": await self._fetch("SELECT id, repository_id, url, data FROM issues"),
            "pull_requests": await self._fetch("SELECT id, repository_id, url, data FROM pull_requests"),
        }

    async def query_issue_links(self, issue_ids: Sequence[str] | None = None) -> list[dict]:
        query = _ISSUE_LINK_SELECT
        params: tuple = ()
        if issue_ids is not None:
            if not issue_ids:
                return []
            markers = ", ".join("?" for _ in issue_ids)
            query += f" WHERE pri.issue_id IN ({markers})"
            params = tuple(issue_ids)
        return await self._fetch(query + " ORDER BY pri.issue_id, pr.github_created_at, pr.id", params)

    async def query_pull_request_links(self, pull_request_ids: Sequence[str] | None = None) -> list[dict]:
        query = _PULL_REQUEST_LINK_SELECT
        params: tuple = ()
        if pull_request_ids is not None:
            if not pull_request_ids:
                return []
            markers = ", ".join("?" for _ in pull_request_ids)
            query += f" WHERE pri.pull_request_id IN ({markers})"
            params = tuple(pull_request_ids)
        return await self._fetch(query + " ORDER BY pri.pull_request_id, issue_number", params)

    # ── Atomic rebuild ────────────────────────────────────────────────

    async def replace_all(
        self,
        *,
        filter_options: dict[str, Any],
        issue_links: list[dict],
        pull_request_links: list[dict],
        states: dict[str, dict[str, Any]],
    ) -> None:
        """Swap every cache and its state record in a single transaction."""
        state_repo = SqliteCacheStateRepository(self.db)
        generated_at = next(iter(states.values()), {}).get("generated_at")
        try:
            await self.db.execute("DELETE FROM activity_filter_options_cache")
            await self.db.execute(
                "INSERT INTO activity_filter_options_cache (cache_key, payload, generated_at) VALUES (?, ?, ?)",
                ("default", json.dumps(filter_options), generated_at),
            )
            await self.db.execute("DELETE FROM activity_issue_links_cache")
            if issue_links:
                await self.db.executemany(
                    f"INSERT OR REPLACE INTO activity_issue_links_cache ({', '.join(ISSUE_LINK_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in ISSUE_LINK_COLUMNS)})",
                    [tuple(row.get(column) for column in ISSUE_LINK_COLUMNS) for row in issue_links],
                )
            await self.db.execute("DELETE FROM activity_pull_request_links_cache")
            if pull_request_links:
                await self.db.executemany(
                    f"INSERT OR REPLACE INTO activity_pull_request_links_cache ({', '.join(PULL_REQUEST_LINK_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in PULL_REQUEST_LINK_COLUMNS)})",
                    [tuple(row.get(column) for column in PULL_REQUEST_LINK_COLUMNS) for row in pull_request_links],
                )
            for cache_key, state in states.items():
                await state_repo.upsert_state(cache_key, commit=False, **state)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # ── Cached reads ──────────────────────────────────────────────────

    async def get_filter_options(self) -> dict[str, Any] | None:
        async with self.db.execute(
            "SELECT payload FROM activity_filter_options_cache WHERE cache_key = 'default'"
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        try:
            payload = json.loads(row["payload"])
        except (TypeError, ValueError):
            return None
        return payload if isinstance(payload, dict) else None

    async def get_issue_links(self, issue_ids: Sequence[str]) -> dict[str, list[dict]]:
        if not issue_ids:
            return {}
        markers = ", ".join("?" for _ in issue_ids)
        rows = await self._fetch(
            f"SELECT * FROM activity_issue_links_cache WHERE issue_id IN ({markers}) ORDER BY issue_id, pr_number",
            tuple(issue_ids),
        )
        return _group(rows, "issue_id")

    async def get_pull_request_links(self, pull_request_ids: Sequence[str]) -> dict[str, list[dict]]:
        if not pull_request_ids:
            return {}
        markers = ", ".join("?" for _ in pull_request_ids)
        rows = await self._fetch(
            f"SELECT * FROM activity_pull_request_links_cache WHERE pull_request_id IN ({markers}) "
            "ORDER BY pull_request_id, issue_number",
            tuple(pull_request_ids),
        )
        return _group(rows, "pull_request_id")
