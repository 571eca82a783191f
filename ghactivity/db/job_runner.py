"""Observable background jobs for the activity feed.

Wraps the automation, snapshot, cache and classifier jobs so the cache API
can start them in the background and report progress by operation ID.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any, Awaitable, Callable

from ghactivity.date_utils import parse_datetime, utc_now_iso
from ghactivity.services.activity_cache import refresh_activity_caches
from ghactivity.services.mention_classifier import classify_unanswered_mentions
from ghactivity.services.snapshot import refresh_activity_snapshot
from ghactivity.services.status_automation import ensure_issue_status_automation

logger = logging.getLogger("ghactivity.db")


class ActivityJobRunner:
    """Runs activity jobs against one database handle and tracks them as operations."""

    def __init__(self, db: Any):  # db is Union[aiosqlite.Connection, asyncpg.Pool]
        self.db = db
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        op_id = f"OP-{uuid.uuid4()}"
        now = utc_now_iso()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "counters": {},
            "stats": {},
            "metadata": metadata or {},
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
            }

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        stats: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            if stats:
                operation.setdefault("stats", {}).update(stats)
            operation["updatedAt"] = utc_now_iso()
        if message:
            logger.info("Operation update [%s] %s - %s", operation_id, phase or "progress", message)

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = utc_now_iso()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["phase"] = status
            operation["updatedAt"] = now
            operation["finishedAt"] = now
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = parse_datetime(operation.get("startedAt"))
            finished_at = parse_datetime(now)
            if started_at and finished_at:
                operation["durationMs"] = max(0, int((finished_at - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    async def _run(
        self,
        kind: str,
        job: Callable[[], Awaitable[dict[str, Any]]],
        *,
        operation_id: str | None,
        trigger: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run ``job`` under an operation; foreground callers get one created for them."""
        if not operation_id:
            operation_id = await self.start_operation(kind, trigger=trigger, metadata=metadata)
        await self._update_operation(operation_id, phase="running")
        try:
            stats = await job()
        except Exception as exc:
            await self._finish_operation(operation_id, status="failed", error=str(exc) or exc.__class__.__name__)
            raise
        await self._finish_operation(operation_id, status="completed", stats=stats)
        return {**stats, "operation_id": operation_id}

    async def run_automation(
        self,
        *,
        force: bool = False,
        operation_id: str | None = None,
        trigger: str = "api",
    ) -> dict[str, Any]:
        async def job() -> dict[str, Any]:
            result = await ensure_issue_status_automation(self.db, trigger=trigger, force=force)
            return result.to_dict()

        return await self._run(
            "status_automation", job, operation_id=operation_id, trigger=trigger, metadata={"force": force}
        )

    async def refresh_snapshot(self, *, operation_id: str | None = None, trigger: str = "api") -> dict[str, Any]:
        return await self._run(
            "refresh_snapshot",
            lambda: refresh_activity_snapshot(self.db, reason=trigger),
            operation_id=operation_id,
            trigger=trigger,
        )

    async def refresh_caches(self, *, operation_id: str | None = None, trigger: str = "api") -> dict[str, Any]:
        return await self._run(
            "refresh_caches",
            lambda: refresh_activity_caches(self.db, reason=trigger),
            operation_id=operation_id,
            trigger=trigger,
        )

    async def classify_mentions(
        self,
        *,
        force: bool = False,
        operation_id: str | None = None,
        trigger: str = "api",
    ) -> dict[str, Any]:
        return await self._run(
            "classify_mentions",
            lambda: classify_unanswered_mentions(self.db, force=force),
            operation_id=operation_id,
            trigger=trigger,
            metadata={"force": force},
        )
