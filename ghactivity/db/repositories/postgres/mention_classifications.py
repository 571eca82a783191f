"""PostgreSQL implementation of MentionClassificationRepository."""
from __future__ import annotations

from typing import Iterable

import asyncpg

from ghactivity.date_utils import utc_now_iso


class PostgresMentionClassificationRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get_many(self, keys: Iterable[tuple[str, str]]) -> dict[tuple[str, str], dict]:
        wanted = set(keys)
        if not wanted:
            return {}
        rows = await self.db.fetch(
            "SELECT * FROM mention_classifications WHERE comment_id = ANY($1::text[])",
            sorted({comment_id for comment_id, _ in wanted}),
        )
        result: dict[tuple[str, str], dict] = {}
        for row in rows:
            key = (row["comment_id"], row["mentioned_user_id"])
            if key in wanted:
                result[key] = dict(row)
        return result

    async def upsert_classification(
        self,
        comment_id: str,
        mentioned_user_id: str,
        *,
        comment_body_hash: str,
        prompt_version: str,
        requires_response: bool | None,
        model: str | None,
        raw_response: str | None,
    ) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO mention_classifications (
                   comment_id, mentioned_user_id, comment_body_hash, prompt_version,
                   requires_response, model, raw_response, last_evaluated_at, created_at, updated_at
               ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $8, $8)
               ON CONFLICT (comment_id, mentioned_user_id) DO UPDATE SET
                 comment_body_hash=EXCLUDED.comment_body_hash, prompt_version=EXCLUDED.prompt_version,
                 requires_response=EXCLUDED.requires_response, model=EXCLUDED.model,
                 raw_response=EXCLUDED.raw_response, last_evaluated_at=EXCLUDED.last_evaluated_at,
                 updated_at=EXCLUDED.updated_at""",
            comment_id, mentioned_user_id, comment_body_hash, prompt_version,
            requires_response, model, raw_response, now,
        )

    async def set_manual_decision(
        self, comment_id: str, mentioned_user_id: str, requires_response: bool | None
    ) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO mention_classifications (
                   comment_id, mentioned_user_id, manual_requires_response, manual_requires_response_at,
                   created_at, updated_at
               ) VALUES ($1, $2, $3, $4, $5, $5)
               ON CONFLICT (comment_id, mentioned_user_id) DO UPDATE SET
                 manual_requires_response=EXCLUDED.manual_requires_response,
                 manual_requires_response_at=EXCLUDED.manual_requires_response_at,
                 updated_at=EXCLUDED.updated_at""",
            comment_id, mentioned_user_id, requires_response,
            now if requires_response is not None else None, now,
        )
