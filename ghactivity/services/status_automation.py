"""Issue status automation: derive activity events from linked pull requests.

Runs at most once per sync generation. The watermark is the organisation's
``last_successful_sync_at``; the value processed last is kept in the
``issue-status-automation`` cache state record.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any

from ghactivity.date_utils import normalize_timestamp, parse_datetime, utc_now, utc_now_iso
from ghactivity.db.factory import (
    get_cache_state_repository,
    get_issue_status_repository,
    get_sync_config_repository,
)
from ghactivity.observability import record_automation_run, start_span
from ghactivity.services.snapshot import refresh_issue_statuses, resolve_issue_from_payload
from ghactivity.services.status_resolver import latest_status_at_or_before

logger = logging.getLogger("ghactivity.automation")

AUTOMATION_CACHE_KEY = "issue-status-automation"
AUTOMATION_LOCK_ID = 4422100313370042
INSERT_BATCH_SIZE = 500
# A "running" record older than this is treated as abandoned.
STALE_RUN_SECONDS = 600

_process_lock = asyncio.Lock()


@dataclass
class AutomationResult:
    processed: bool
    inserted_in_progress: int = 0
    inserted_done: int = 0
    status: str = "skipped"
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "processed": data["processed"],
            "insertedInProgress": data["inserted_in_progress"],
            "insertedDone": data["inserted_done"],
            "status": data["status"],
            "runId": data["run_id"],
        }


def _is_recent_run(metadata: dict[str, Any]) -> bool:
    started = parse_datetime(metadata.get("startedAt"))
    if started is None:
        return False
    return (utc_now() - started).total_seconds() < STALE_RUN_SECONDS


def _should_run(state: dict | None, watermark: str | None, force: bool) -> bool:
    if force or not state:
        return True
    metadata = state.get("metadata") or {}
    if metadata.get("lastSuccessfulSyncAt") != watermark:
        if metadata.get("status") == "running" and metadata.get("targetSyncAt") == watermark:
            return not _is_recent_run(metadata)
        return True
    if metadata.get("status") == "success":
        return False
    if metadata.get("status") == "running":
        return not _is_recent_run(metadata)
    return True


async def _insert_batches(repo: Any, events: list[tuple[str, str, str]]) -> int:
    inserted = 0
    for offset in range(0, len(events), INSERT_BATCH_SIZE):
        inserted += await repo.insert_events(events[offset:offset + INSERT_BATCH_SIZE], source="activity")
    return inserted


async def _apply_automation(db: Any, target_project: str | None) -> tuple[int, int, set[str]]:
    repo = get_issue_status_repository(db)
    candidates = await repo.list_automation_candidates()
    if not candidates:
        return 0, 0, set()
    existing = await repo.list_events([row["issue_id"] for row in candidates])

    in_progress: list[tuple[str, str, str]] = []
    done: list[tuple[str, str, str]] = []
    for row in candidates:
        issue_id = row["issue_id"]
        info = resolve_issue_from_payload(row.get("issue_data"), existing.get(issue_id, []), target_project)
        if info.locked:
            continue
        started_at = normalize_timestamp(row.get("first_pr_created_at"))
        if started_at and latest_status_at_or_before(info.activity_events, started_at) != "in_progress":
            in_progress.append((issue_id, "in_progress", started_at))
        # Closed-unmerged PRs never contribute a merge time.
        merged_at = normalize_timestamp(row.get("first_merged_at"))
        if merged_at:
            done.append((issue_id, "done", merged_at))

    inserted_in_progress = await _insert_batches(repo, in_progress)
    inserted_done = await _insert_batches(repo, done)
    affected = {event[0] for event in in_progress} | {event[0] for event in done}
    return inserted_in_progress, inserted_done, affected


async def ensure_issue_status_automation(
    db: Any,
    *,
    trigger: str = "manual",
    force: bool = False,
) -> AutomationResult:
    """Run the automation once per sync watermark.

    Raises the processing error after recording it; callers on read paths
    are expected to log and continue.
    """
    async with _process_lock:
        config_repo = get_sync_config_repository(db)
        state_repo = get_cache_state_repository(db)
        sync_config = await config_repo.get_config()
        watermark = sync_config.get("last_successful_sync_at")
        run_id = f"AUTO-{uuid.uuid4()}"
        started_at = utc_now_iso()

        def running_metadata(state: dict | None) -> dict[str, Any]:
            previous = (state or {}).get("metadata") or {}
            return {
                **previous,
                "status": "running",
                "runId": run_id,
                "trigger": trigger,
                "startedAt": started_at,
                "targetSyncAt": watermark,
                "error": None,
            }

        claimed, previous_state = await state_repo.claim(
            AUTOMATION_CACHE_KEY,
            lock_id=AUTOMATION_LOCK_ID,
            should_run=lambda state: _should_run(state, watermark, force),
            running_metadata=running_metadata,
        )
        if not claimed:
            logger.debug("Issue status automation skipped (watermark %s already processed)", watermark)
            return AutomationResult(processed=False)

        previous = (previous_state or {}).get("metadata") or {}
        latest_run = await config_repo.get_latest_completed_run()
        with start_span("activity.status_automation", {"trigger": trigger, "force": force}):
            try:
                inserted_in_progress, inserted_done, affected = await _apply_automation(
                    db, sync_config.get("todo_project_name")
                )
                if affected:
                    await refresh_issue_statuses(db, affected)
            except Exception as exc:
                logger.exception("Issue status automation failed (run %s)", run_id)
                await state_repo.upsert_state(
                    AUTOMATION_CACHE_KEY,
                    generated_at=(previous_state or {}).get("generated_at"),
                    sync_run_id=(previous_state or {}).get("sync_run_id"),
                    item_count=int((previous_state or {}).get("item_count") or 0),
                    metadata={
                        "status": "failed",
                        "runId": run_id,
                        "trigger": trigger,
                        "insertedInProgress": 0,
                        "insertedDone": 0,
                        "lastSuccessfulSyncAt": previous.get("lastSuccessfulSyncAt"),
                        "lastSuccessAt": previous.get("lastSuccessAt"),
                        "startedAt": started_at,
                        "finishedAt": utc_now_iso(),
                        "error": str(exc) or exc.__class__.__name__,
                    },
                )
                record_automation_run("failed")
                raise

        finished_at = utc_now_iso()
        await state_repo.upsert_state(
            AUTOMATION_CACHE_KEY,
            generated_at=finished_at,
            sync_run_id=(latest_run or {}).get("id"),
            item_count=inserted_in_progress + inserted_done,
            metadata={
                "status": "success",
                "runId": run_id,
                "trigger": trigger,
                "insertedInProgress": inserted_in_progress,
                "insertedDone": inserted_done,
                "lastSuccessfulSyncAt": watermark,
                "lastSuccessAt": finished_at,
                "startedAt": started_at,
                "finishedAt": finished_at,
                "error": None,
            },
        )
        record_automation_run("success", inserted_in_progress, inserted_done)
        logger.info(
            "Issue status automation complete (run=%s trigger=%s in_progress=%d done=%d)",
            run_id, trigger, inserted_in_progress, inserted_done,
        )
        return AutomationResult(
            processed=True,
            inserted_in_progress=inserted_in_progress,
            inserted_done=inserted_done,
            status="success",
            run_id=run_id,
        )


async def get_automation_summary(db: Any) -> dict[str, Any]:
    state = await get_cache_state_repository(db).get_state(AUTOMATION_CACHE_KEY)
    sync_config = await get_sync_config_repository(db).get_config()
    metadata = (state or {}).get("metadata") or {}
    return {
        "cacheKey": AUTOMATION_CACHE_KEY,
        "status": metadata.get("status"),
        "runId": metadata.get("runId"),
        "trigger": metadata.get("trigger"),
        "insertedInProgress": int(metadata.get("insertedInProgress") or 0),
        "insertedDone": int(metadata.get("insertedDone") or 0),
        "lastSuccessfulSyncAt": metadata.get("lastSuccessfulSyncAt"),
        "lastSuccessAt": metadata.get("lastSuccessAt"),
        "error": metadata.get("error"),
        "generatedAt": (state or {}).get("generated_at"),
        "updatedAt": (state or {}).get("updated_at"),
        "currentSyncAt": sync_config.get("last_successful_sync_at"),
        "pending": metadata.get("lastSuccessfulSyncAt") != sync_config.get("last_successful_sync_at")
        or metadata.get("status") != "success",
    }
