"""SQLite implementation of MentionClassificationRepository."""
from __future__ import annotations

from typing import Any, Iterable

import aiosqlite

from ghactivity.date_utils import utc_now_iso


def _format_classification(row: Any) -> dict:
    record = dict(row)
    for key in ("requires_response", "manual_requires_response"):
        value = record.get(key)
        record[key] = None if value is None else bool(value)
    return record


class SqliteMentionClassificationRepository:
    """AI verdicts and manual decisions per ``(comment, mentioned user)``."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_many(self, keys: Iterable[tuple[str, str]]) -> dict[tuple[str, str], dict]:
        wanted = set(keys)
        if not wanted:
            return {}
        comment_ids = sorted({comment_id for comment_id, _ in wanted})
        markers = ", ".join("?" for _ in comment_ids)
        async with self.db.execute(
            f"SELECT * FROM mention_classifications WHERE comment_id IN ({markers})", tuple(comment_ids)
        ) as cur:
            rows = [_format_classification(r) for r in await cur.fetchall()]
        return {
            (row["comment_id"], row["mentioned_user_id"]): row
            for row in rows
            if (row["comment_id"], row["mentioned_user_id"]) in wanted
        }

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
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(comment_id, mentioned_user_id) DO UPDATE SET
                 comment_body_hash=excluded.comment_body_hash, prompt_version=excluded.prompt_version,
                 requires_response=excluded.requires_response, model=excluded.model,
                 raw_response=excluded.raw_response, last_evaluated_at=excluded.last_evaluated_at,
                 updated_at=excluded.updated_at""",
            (
                comment_id, mentioned_user_id, comment_body_hash, prompt_version,
                None if requires_response is None else int(bool(requires_response)),
                model, raw_response, now, now, now,
            ),
        )
        await self.db.commit()

    async def set_manual_decision(
        self, comment_id: str, mentioned_user_id: str, requires_response: bool | None
    ) -> None:
        """Store (or clear with ``None``) a manual decision."""
        now = utc_now_iso()
        value = None if requires_response is None else int(bool(requires_response))
        await self.db.execute(
            """INSERT INTO mention_classifications (
                   comment_id, mentioned_user_id, manual_requires_response, manual_requires_response_at,
                   created_at, updated_at
               ) VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(comment_id, mentioned_user_id) DO UPDATE SET
                 manual_requires_response=excluded.manual_requires_response,
                 manual_requires_response_at=excluded.manual_requires_response_at,
                 updated_at=excluded.updated_at""",
            (comment_id, mentioned_user_id, value, now if value is not None else None, now, now),
        )
        await self.db.commit()
