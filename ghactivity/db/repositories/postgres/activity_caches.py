"""PostgreSQL implementation of ActivityCacheRepository."""
from __future__ import annotations

from typing import Any, Sequence

import asyncpg

from ghactivity.db.repositories.activity_caches import (
    ISSUE_LINK_COLUMNS,
    PULL_REQUEST_LINK_COLUMNS,
    _group,
)
from ghactivity.db.repositories.postgres.cache_state import PostgresCacheStateRepository

_ISSUE_LINK_SELECT = """
    SELECT pri.issue_id AS issue_id,
           pr.id AS pull_request_id,
           pr.number AS pr_number,
           pr.title AS pr_title,
           pr.state AS pr_state,
           CASE
             WHEN pr.merged IS TRUE OR pr.github_merged_at IS NOT NULL THEN 'merged'
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


class PostgresActivityCacheRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def _fetch(self, query: str, *args: Any) -> list[dict]:
        return [dict(r) for r in await self.db.fetch(query, *args)]

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
        if issue_ids is None:
            return await self._fetch(_ISSUE_LINK_SELECT + " ORDER BY pri.issue_id, pr.github_created_at, pr.id")
        if not issue_ids:
            return []
        return await self._fetch(
            _ISSUE_LINK_SELECT
            + " WHERE pri.issue_id = ANY($1::text[]) ORDER BY pri.issue_id, pr.github_created_at, pr.id",
            list(issue_ids),
        )

    async def query_pull_request_links(self, pull_request_ids: Sequence[str] | None = None) -> list[dict]:
        if pull_request_ids is None:
            return await self._fetch(_PULL_REQUEST_LINK_SELECT + " ORDER BY pri.pull_request_id, issue_number")
        if not pull_request_ids:
            return []
        return await self._fetch(
            _PULL_REQUEST_LINK_SELECT
            + " WHERE pri.pull_request_id = ANY($1::text[]) ORDER BY pri.pull_request_id, issue_number",
            list(pull_request_ids),
        )

    async def replace_all(
        self,
        *,
        filter_options: dict[str, Any],
        issue_links: list[dict],
        pull_request_links: list[dict],
        states: dict[str, dict[str, Any]],
    ) -> None:
        state_repo = PostgresCacheStateRepository(self.db)
        generated_at = next(iter(states.values()), {}).get("generated_at")
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM activity_filter_options_cache")
                await conn.execute(
                    "INSERT INTO activity_filter_options_cache (cache_key, payload, generated_at) VALUES ($1, $2, $3)",
                    "default", filter_options, generated_at,
                )
                await conn.execute("DELETE FROM activity_issue_links_cache")
                if issue_links:
                    await conn.executemany(
                        f"INSERT INTO activity_issue_links_cache ({', '.join(ISSUE_LINK_COLUMNS)}) "
                        f"VALUES ({', '.join(f'${i}' for i in range(1, len(ISSUE_LINK_COLUMNS) + 1))}) "
                        "ON CONFLICT DO NOTHING",
                        [tuple(row.get(column) for column in ISSUE_LINK_COLUMNS) for row in issue_links],
                    )
                await conn.execute("DELETE FROM activity_pull_request_links_cache")
                if pull_request_links:
                    await conn.executemany(
                        f"INSERT INTO activity_pull_request_links_cache ({', '.join(PULL_REQUEST_LINK_COLUMNS)}) "
                        f"VALUES ({', '.join(f'${i}' for i in range(1, len(PULL_REQUEST_LINK_COLUMNS) + 1))}) "
                        "ON CONFLICT DO NOTHING",
                        [tuple(row.get(column) for column in PULL_REQUEST_LINK_COLUMNS) for row in pull_request_links],
                    )
                for cache_key, state in states.items():
                    await state_repo.upsert_state(cache_key, conn=conn, **state)

    async def get_filter_options(self) -> dict[str, Any] | None:
        payload = await self.db.fetchval(
            "SELECT payload FROM activity_filter_options_cache WHERE cache_key = 'default'"
        )
        return payload if isinstance(payload, dict) else None

    async def get_issue_links(self, issue_ids: Sequence[str]) -> dict[str, list[dict]]:
        if not issue_ids:
            return {}
        rows = await self._fetch(
            "SELECT * FROM activity_issue_links_cache WHERE issue_id = ANY($1::text[]) ORDER BY issue_id, pr_number",
            list(issue_ids),
        )
        return _group(rows, "issue_id")

    async def get_pull_request_links(self, pull_request_ids: Sequence[str]) -> dict[str, list[dict]]:
        if not pull_request_ids:
            return {}
        rows = await self._fetch(
            "SELECT * FROM activity_pull_request_links_cache WHERE pull_request_id = ANY($1::text[]) "
            "ORDER BY pull_request_id, issue_number",
            list(pull_request_ids),
        )
        return _group(rows, "pull_request_id")
