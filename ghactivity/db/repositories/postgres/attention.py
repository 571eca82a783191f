"""PostgreSQL implementation of AttentionRepository."""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Sequence

import asyncpg

from ghactivity.db.query_builder import Clause, PostgresDialect, and_


class PostgresAttentionRepository:
    dialect = PostgresDialect()

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def _fetch(self, query: str, where: Clause | None = None) -> list[dict]:
        sql, params = self.dialect.render(where)
        query = query.replace("{where}", f"AND {sql}" if sql else "")
        return [dict(r) for r in await self.db.fetch(query, *params)]

    def _exclusions(
        self,
        repository_column: str,
        author_column: str | None,
        excluded_repository_ids: Sequence[str],
        excluded_user_ids: Sequence[str],
    ) -> Clause | None:
        clauses = [
            Clause(f"{repository_column} IS NULL") | self.dialect.not_in_list(repository_column, excluded_repository_ids)
        ]
        if author_column and excluded_user_ids:
            clauses.append(
                Clause(f"{author_column} IS NULL") | self.dialect.not_in_list(author_column, excluded_user_ids)
            )
        return and_(*clauses)

    async def list_open_pull_requests(
        self, excluded_repository_ids: Sequence[str], excluded_user_ids: Sequence[str]
    ) -> list[dict]:
        return await self._fetch(
            """SELECT pr.id, pr.repository_id, pr.author_id, pr.github_created_at, pr.github_updated_at
               FROM pull_requests pr
               WHERE (lower(COALESCE(pr.state, '')) = 'open' OR pr.github_closed_at IS NULL)
                 AND pr.github_merged_at IS NULL
                 {where}
               ORDER BY pr.github_created_at""",
            self._exclusions("pr.repository_id", "pr.author_id", excluded_repository_ids, excluded_user_ids),
        )

    async def list_pending_review_requests(
        self, excluded_repository_ids: Sequence[str], excluded_user_ids: Sequence[str]
    ) -> list[dict]:
        where = and_(
            self._exclusions("pr.repository_id", "pr.author_id", excluded_repository_ids, excluded_user_ids),
            self.dialect.not_in_list("rr.reviewer_id", excluded_user_ids),
        )
        return await self._fetch(
            """SELECT rr.id, rr.pull_request_id, rr.reviewer_id, rr.requested_at
               FROM review_requests rr
               JOIN pull_requests pr ON pr.id = rr.pull_request_id
               WHERE rr.reviewer_id IS NOT NULL
                 AND rr.removed_at IS NULL
                 AND rr.requested_at IS NOT NULL
                 AND (lower(COALESCE(pr.state, '')) = 'open' OR pr.github_closed_at IS NULL)
                 AND NOT EXISTS (
                   SELECT 1 FROM reviews r
                   WHERE r.pull_request_id = rr.pull_request_id
                     AND r.author_id = rr.reviewer_id
                     AND r.github_submitted_at IS NOT NULL
                     AND r.github_submitted_at >= rr.requested_at
                 )
                 AND NOT EXISTS (
                   SELECT 1 FROM comments c
                   LEFT JOIN reviews cr ON cr.id = c.review_id
                   WHERE COALESCE(c.pull_request_id, cr.pull_request_id) = rr.pull_request_id
                     AND c.author_id = rr.reviewer_id
                     AND c.github_created_at >= rr.requested_at
                 )
                 AND NOT EXISTS (
                   SELECT 1 FROM reactions reac
                   LEFT JOIN comments rc ON rc.id = reac.subject_id
                   LEFT JOIN reviews rv ON rv.id = reac.subject_id
                   WHERE reac.user_id = rr.reviewer_id
                     AND (reac.subject_id = rr.pull_request_id
                          OR rc.pull_request_id = rr.pull_request_id
                          OR rv.pull_request_id = rr.pull_request_id)
                     AND COALESCE(reac.github_created_at, rr.requested_at) >= rr.requested_at
                 )
                 {where}
               ORDER BY rr.requested_at""",
            where,
        )

    async def list_open_issues(
        self, excluded_repository_ids: Sequence[str], excluded_user_ids: Sequence[str]
    ) -> list[dict]:
        return await self._fetch(
            """SELECT i.id, i.repository_id, i.author_id, i.state, i.url, i.data,
                      i.github_created_at, i.github_closed_at
               FROM issues i
               WHERE (lower(COALESCE(i.state, '')) = 'open' OR i.github_closed_at IS NULL)
                 {where}
               ORDER BY i.github_created_at""",
            self._exclusions("i.repository_id", "i.author_id", excluded_repository_ids, excluded_user_ids),
        )

    async def list_mention_comments(
        self, excluded_repository_ids: Sequence[str], excluded_user_ids: Sequence[str]
    ) -> list[dict]:
        return await self._fetch(
            """SELECT c.id AS comment_id, c.author_id, c.github_created_at AS mentioned_at, c.data,
                      COALESCE(c.pull_request_id, r.pull_request_id) AS pull_request_id,
                      c.issue_id,
                      COALESCE(pr.repository_id, i.repository_id) AS repository_id
               FROM comments c
               LEFT JOIN reviews r ON r.id = c.review_id
               LEFT JOIN pull_requests pr ON pr.id = COALESCE(c.pull_request_id, r.pull_request_id)
               LEFT JOIN issues i ON i.id = c.issue_id
               WHERE strpos(COALESCE(c.data->>'body', ''), '@') > 0
                 AND c.github_created_at IS NOT NULL
                 AND (COALESCE(c.pull_request_id, r.pull_request_id) IS NOT NULL OR c.issue_id IS NOT NULL)
                 {where}
               ORDER BY c.github_created_at, c.id""",
            self._exclusions(
                "COALESCE(pr.repository_id, i.repository_id)", "c.author_id",
                excluded_repository_ids, excluded_user_ids,
            ),
        )

    async def list_users_by_login(self) -> dict[str, str]:
        rows = await self.db.fetch("SELECT id, login FROM users WHERE login IS NOT NULL")
        return {str(row["login"]).lower(): row["id"] for row in rows}

    async def list_container_responses(self, container_ids: Sequence[str]) -> dict[str, list[dict]]:
        ids = sorted(set(container_ids))
        if not ids:
            return {}
        grouped: dict[str, list[dict]] = defaultdict(list)
        rows = await self.db.fetch(
            """SELECT c.id, c.author_id, c.github_created_at AS responded_at,
                      COALESCE(c.pull_request_id, r.pull_request_id, c.issue_id) AS container_id
               FROM comments c
               LEFT JOIN reviews r ON r.id = c.review_id
               WHERE COALESCE(c.pull_request_id, r.pull_request_id, c.issue_id) = ANY($1::text[])
               UNION ALL
               SELECT id, author_id, github_submitted_at AS responded_at, pull_request_id AS container_id
               FROM reviews
               WHERE github_submitted_at IS NOT NULL AND pull_request_id = ANY($1::text[])""",
            ids,
        )
        for row in rows:
            grouped[row["container_id"]].append(dict(row))
        return dict(grouped)

    async def list_comment_reactions(self, comment_ids: Sequence[str]) -> dict[str, list[dict]]:
        ids = sorted(set(comment_ids))
        if not ids:
            return {}
        grouped: dict[str, list[dict]] = defaultdict(list)
        rows = await self.db.fetch(
            "SELECT subject_id, user_id, github_created_at FROM reactions WHERE subject_id = ANY($1::text[])", ids
        )
        for row in rows:
            grouped[row["subject_id"]].append(dict(row))
        return dict(grouped)

    async def list_repository_maintainers(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = defaultdict(list)
        rows = await self.db.fetch(
            "SELECT repository_id, user_id FROM repository_maintainers ORDER BY repository_id, user_id"
        )
        for row in rows:
            grouped[row["repository_id"]].append(row["user_id"])
        return dict(grouped)

    async def get_comment(self, comment_id: str) -> dict[str, Any] | None:
        row = await self.db.fetchrow(
            "SELECT id, author_id, data, github_created_at FROM comments WHERE id = $1", comment_id
        )
        return dict(row) if row else None
