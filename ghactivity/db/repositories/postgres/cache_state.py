"""PostgreSQL implementation of CacheStateRepository."""
from __future__ import annotations

from typing import Any, Callable

import asyncpg

from ghactivity.date_utils import utc_now_iso
from ghactivity.db.repositories.cache_state import _format_state

_UPSERT = """
    INSERT INTO activity_cache_state (cache_key, generated_at, sync_run_id, item_count, metadata, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT (cache_key) DO UPDATE SET
      generated_at=EXCLUDED.generated_at, sync_run_id=EXCLUDED.sync_run_id,
      item_count=EXCLUDED.item_count, metadata=EXCLUDED.metadata,
      updated_at=EXCLUDED.updated_at
"""


class PostgresCacheStateRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get_state(self, cache_key: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM activity_cache_state WHERE cache_key = $1", cache_key)
        return _format_state(row)

    async def list_states(self, cache_keys: list[str]) -> dict[str, dict]:
        if not cache_keys:
            return {}
        rows = await self.db.fetch(
            "SELECT * FROM activity_cache_state WHERE cache_key = ANY($1::text[])", list(cache_keys)
        )
        states = [_format_state(row) for row in rows]
        return {state["cache_key"]: state for state in states if state}

    async def upsert_state(
        self,
        cache_key: str,
        *,
        generated_at: str | None,
        sync_run_id: str | None,
        item_count: int = 0,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
        conn: Any = None,
    ) -> None:
        now = utc_now_iso()
        await (conn or self.db).execute(
            _UPSERT, cache_key, generated_at, sync_run_id, int(item_count or 0), metadata or {}, now
        )

    async def claim(
        self,
        cache_key: str,
        *,
        lock_id: int,
        should_run: Callable[[dict | None], bool],
        running_metadata: Callable[[dict | None], dict[str, Any]],
    ) -> tuple[bool, dict | None]:
        """Check and mark a job running under a transaction-scoped advisory lock."""
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", lock_id)
                state = _format_state(
                    await conn.fetchrow("SELECT * FROM activity_cache_state WHERE cache_key = $1", cache_key)
                )
                if not should_run(state):
                    return False, state
                now = utc_now_iso()
                await conn.execute(
                    _UPSERT,
                    cache_key,
                    (state or {}).get("generated_at"),
                    (state or {}).get("sync_run_id"),
                    int((state or {}).get("item_count") or 0),
                    running_metadata(state),
                    now,
                )
                return True, state
