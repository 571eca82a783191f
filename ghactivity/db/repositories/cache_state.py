"""SQLite implementation of CacheStateRepository."""
from __future__ import annotations

import json
from typing import Any, Callable

import aiosqlite

from ghactivity.date_utils import utc_now_iso


def _format_state(row: Any) -> dict | None:
    if not row:
        return None
    state = dict(row)
    raw = state.get("metadata")
    if isinstance(raw, str):
        try:
            state["metadata"] = json.loads(raw) if raw else {}
        except ValueError:
            state["metadata"] = {}
    elif not isinstance(raw, dict):
        state["metadata"] = {}
    return state


class SqliteCacheStateRepository:
    """One state record per derived cache or batch job."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_state(self, cache_key: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM activity_cache_state WHERE cache_key = ?", (cache_key,)
        ) as cur:
            return _format_state(await cur.fetchone())

    async def list_states(self, cache_keys: list[str]) -> dict[str, dict]:
        if not cache_keys:
            return {}
        markers = ", ".join("?" for _ in cache_keys)
        async with self.db.execute(
            f"SELECT * FROM activity_cache_state WHERE cache_key IN ({markers})", tuple(cache_keys)
        ) as cur:
            states = [_format_state(row) for row in await cur.fetchall()]
        return {state["cache_key"]: state for state in states if state}

    async def _write_state(
        self,
        cache_key: str,
        *,
        generated_at: str | None,
        sync_run_id: str | None,
        item_count: int,
        metadata: dict[str, Any],
    ) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO activity_cache_state (cache_key, generated_at, sync_run_id, item_count, metadata, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(cache_key) DO UPDATE SET
                 generated_at=excluded.generated_at, sync_run_id=excluded.sync_run_id,
                 item_count=excluded.item_count, metadata=excluded.metadata,
                 updated_at=excluded.updated_at""",
            (cache_key, generated_at, sync_run_id, int(item_count or 0), json.dumps(metadata or {}), now),
        )

    async def upsert_state(
        self,
        cache_key: str,
        *,
        generated_at: str | None,
        sync_run_id: str | None,
        item_count: int = 0,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> None:
        await self._write_state(
            cache_key,
            generated_at=generated_at,
            sync_run_id=sync_run_id,
            item_count=item_count,
            metadata=metadata or {},
        )
        if commit:
            await self.db.commit()

    async def claim(
        self,
        cache_key: str,
        *,
        lock_id: int,
        should_run: Callable[[dict | None], bool],
        running_metadata: Callable[[dict | None], dict[str, Any]],
    ) -> tuple[bool, dict | None]:
        """Atomically check a job's state and mark it running.

        Uses an IMMEDIATE transaction so only one writer can decide at a time;
        ``lock_id`` is only meaningful for Postgres advisory locks.
        """
        if self.db.in_transaction:
            await self.db.commit()
        await self.db.execute("BEGIN IMMEDIATE")
        try:
            async with self.db.execute(
                "SELECT * FROM activity_cache_state WHERE cache_key = ?", (cache_key,)
            ) as cur:
                state = _format_state(await cur.fetchone())
            if not should_run(state):
                await self.db.commit()
                return False, state
            await self._write_state(
                cache_key,
                generated_at=(state or {}).get("generated_at"),
                sync_run_id=(state or {}).get("sync_run_id"),
                item_count=int((state or {}).get("item_count") or 0),
                metadata=running_metadata(state),
            )
            await self.db.commit()
            return True, state
        except Exception:
            await self.db.rollback()
            raise
