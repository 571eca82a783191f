"""Materialization of the ``activity_items`` snapshot from the raw GitHub tables."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Iterable

from ghactivity.date_utils import normalize_timestamp, utc_now_iso
from ghactivity.db.factory import (
    get_activity_item_repository,
    get_cache_state_repository,
    get_issue_status_repository,
    get_project_override_repository,
    get_sync_config_repository,
)
from ghactivity.observability import record_cache_refresh, start_span
from ghactivity.services.github_payload import (
    apply_project_overrides,
    comment_body,
    extract_mentions,
    extract_project_fields,
    label_key,
    parse_item_payload,
    safe_json_dict,
)
from ghactivity.services.status_resolver import (
    IssueStatusInfo,
    extract_project_status_events,
    normalize_events,
    resolve_issue_status,
    resolve_work_timestamps,
    was_tracked_by_project,
)

logger = logging.getLogger("ghactivity.activity")

SNAPSHOT_CACHE_KEY = "activity-snapshot"

_refresh_lock = asyncio.Lock()


def resolve_issue_from_payload(
    payload: Any,
    activity_rows: Iterable[Any],
    target_project: str | None,
) -> IssueStatusInfo:
    data = safe_json_dict(payload)
    return resolve_issue_status(
        extract_project_status_events(data, target_project),
        normalize_events(activity_rows),
        tracked=was_tracked_by_project(data, target_project),
    )


def issue_status_columns(info: IssueStatusInfo) -> dict[str, Any]:
    work = resolve_work_timestamps(info)
    return {
        "issue_todo_status": info.todo_status,
        "issue_todo_status_at": info.todo_status_at,
        "issue_activity_status": info.activity_status,
        "issue_activity_status_at": info.activity_status_at,
        "issue_display_status": info.display_status,
        "issue_status_source": info.source,
        "issue_status_locked": info.locked,
        "issue_work_started_at": work.started_at,
        "issue_work_completed_at": work.completed_at,
    }


def _base_status(state: Any, closed_at: Any, merged: bool = False) -> str:
    if merged:
        return "merged"
    if str(state or "").strip().lower() == "closed" or closed_at:
        return "closed"
    return "open"


def _sorted_ids(values: Iterable[Any]) -> list[str]:
    return sorted({str(value) for value in values if value})


def build_snapshot_items(
    sources: dict[str, list[dict]],
    *,
    status_events: dict[str, list[dict]],
    overrides: dict[str, dict],
    target_project: str | None,
    snapshot_at: str,
) -> list[dict]:
    """Denormalize raw rows into one activity item per issue, discussion and PR."""
    repositories = {row["id"]: row for row in sources.get("repositories", [])}
    logins = {
        str(row["login"]).lower(): row["id"]
        for row in sources.get("users", [])
        if row.get("login")
    }
    maintainers: dict[str, set[str]] = defaultdict(set)
    for row in sources.get("maintainers", []):
        maintainers[row["repository_id"]].add(row["user_id"])

    reviewers: dict[str, set[str]] = defaultdict(set)
    for row in sources.get("review_requests", []):
        if row.get("reviewer_id") and not row.get("removed_at"):
            reviewers[row["pull_request_id"]].add(row["reviewer_id"])
    review_owner: dict[str, str] = {}
    for row in sources.get("reviews", []):
        review_owner[row["id"]] = row["pull_request_id"]
        if row.get("author_id"):
            reviewers[row["pull_request_id"]].add(row["author_id"])

    commenters: dict[str, set[str]] = defaultdict(set)
    mentioned_logins: dict[str, set[str]] = defaultdict(set)
    comment_owner: dict[str, str] = {}
    for row in sources.get("comments", []):
        owner = row.get("pull_request_id") or row.get("issue_id")
        if not owner:
            continue
        comment_owner[row["id"]] = owner
        if row.get("author_id"):
            commenters[owner].add(row["author_id"])
        mentioned_logins[owner].update(extract_mentions(comment_body(row.get("data"))))

    reactors: dict[str, set[str]] = defaultdict(set)
    for row in sources.get("reactions", []):
        subject = row.get("subject_id")
        owner = comment_owner.get(subject) or review_owner.get(subject) or subject
        if owner and row.get("user_id"):
            reactors[owner].add(row["user_id"])

    def common(row: dict, payload: Any, kind: str) -> dict[str, Any]:
        repo = repositories.get(row.get("repository_id")) or {}
        name_with_owner = repo.get("name_with_owner")
        handles = set(mentioned_logins.get(row["id"], set()))
        handles.update(extract_mentions(payload.body))
        return {
            "id": row["id"],
            "item_type": kind,
            "number": row.get("number"),
            "title": row.get("title"),
            "url": row.get("url") or payload.url,
            "state": row.get("state"),
            "repository_id": row.get("repository_id"),
            "repository_name": repo.get("name"),
            "repository_name_with_owner": name_with_owner,
            "author_id": row.get("author_id"),
            "assignee_ids": _sorted_ids(payload.assignee_ids),
            "mentioned_ids": _sorted_ids(logins.get(handle) for handle in handles),
            "commenter_ids": _sorted_ids(commenters.get(row["id"], ())),
            "reactor_ids": _sorted_ids(reactors.get(row["id"], ())),
            "maintainer_ids": _sorted_ids(maintainers.get(row.get("repository_id"), ())),
            "label_keys": sorted({label_key(name_with_owner, label) for label in payload.label_names}),
            "label_names": sorted(set(payload.label_names)),
            "body_text": payload.body,
            "created_at": normalize_timestamp(row.get("github_created_at")),
            "updated_at": normalize_timestamp(row.get("github_updated_at") or row.get("github_created_at")),
            "closed_at": normalize_timestamp(row.get("github_closed_at")),
            "snapshot_at": snapshot_at,
        }

    items: list[dict] = []
    for row in sources.get("issues", []):
        payload = parse_item_payload(row.get("data"), row.get("url"))
        kind = "discussion" if payload.is_discussion else "issue"
        item = common(row, payload, kind)
        item.update({
            "status": _base_status(row.get("state"), row.get("github_closed_at")),
            "reviewer_ids": [],
            "issue_type_id": payload.issue_type_id,
            "issue_type_name": payload.issue_type_name,
            "milestone_id": payload.milestone.get("id"),
            "milestone_title": payload.milestone.get("title"),
            "milestone_state": payload.milestone.get("state"),
            "milestone_due_on": payload.milestone.get("dueOn"),
            "milestone_url": payload.milestone.get("url"),
            "tracked_issues_count": payload.tracked_issues_count,
            "tracked_in_issues_count": payload.tracked_in_issues_count,
        })
        if kind == "issue":
            fields = apply_project_overrides(
                extract_project_fields(payload.raw, target_project), overrides.get(row["id"])
            )
            item.update({
                "issue_priority": fields.priority,
                "issue_weight": fields.weight,
                "issue_initiation_options": fields.initiation_options,
                "issue_start_date": fields.start_date,
            })
            info = resolve_issue_from_payload(payload.raw, status_events.get(row["id"], []), target_project)
            item.update(issue_status_columns(info))
        items.append(item)

    for row in sources.get("pull_requests", []):
        payload = parse_item_payload(row.get("data"), row.get("url"))
        item = common(row, payload, "pull_request")
        merged = bool(row.get("merged")) or bool(row.get("github_merged_at"))
        item.update({
            "status": _base_status(row.get("state"), row.get("github_closed_at"), merged),
            "reviewer_ids": _sorted_ids(reviewers.get(row["id"], ())),
            "merged_at": normalize_timestamp(row.get("github_merged_at")),
            "tracked_issues_count": 0,
            "tracked_in_issues_count": 0,
        })
        items.append(item)
    return items


async def refresh_activity_snapshot(db: Any, *, reason: str = "manual") -> dict[str, Any]:
    """Rebuild the whole snapshot and stamp it with the latest sync run."""
    async with _refresh_lock:
        started = time.monotonic()
        config_repo = get_sync_config_repository(db)
        sync_config = await config_repo.get_config()
        latest_run = await config_repo.get_latest_completed_run()
        item_repo = get_activity_item_repository(db)
        with start_span("activity.snapshot.refresh", {"reason": reason}):
            try:
                sources = await item_repo.load_snapshot_sources()
                status_events = await get_issue_status_repository(db).list_events()
                overrides = await get_project_override_repository(db).get_overrides()
                snapshot_at = utc_now_iso()
                items = build_snapshot_items(
                    sources,
                    status_events=status_events,
                    overrides=overrides,
                    target_project=sync_config.get("todo_project_name"),
                    snapshot_at=snapshot_at,
                )
                count = await item_repo.replace_all(items)
                await get_cache_state_repository(db).upsert_state(
                    SNAPSHOT_CACHE_KEY,
                    generated_at=snapshot_at,
                    sync_run_id=(latest_run or {}).get("id"),
                    item_count=count,
                    metadata={"reason": reason},
                )
            except Exception:
                record_cache_refresh(SNAPSHOT_CACHE_KEY, "failed", (time.monotonic() - started) * 1000)
                raise
        duration_ms = (time.monotonic() - started) * 1000
        record_cache_refresh(SNAPSHOT_CACHE_KEY, "success", duration_ms)
        logger.info("Activity snapshot rebuilt (%s items, reason=%s, %.0fms)", count, reason, duration_ms)
        return {
            "cacheKey": SNAPSHOT_CACHE_KEY,
            "itemCount": count,
            "generatedAt": snapshot_at,
            "syncRunId": (latest_run or {}).get("id"),
            "durationMs": round(duration_ms, 2),
        }


async def ensure_activity_snapshot(db: Any, *, reason: str = "read", force: bool = False) -> bool:
    """Rebuild the snapshot when it is missing or older than the latest sync run."""
    if not force:
        state = await get_cache_state_repository(db).get_state(SNAPSHOT_CACHE_KEY)
        latest_run = await get_sync_config_repository(db).get_latest_completed_run()
        latest_id = (latest_run or {}).get("id")
        if state and state.get("generated_at") and state.get("sync_run_id") == latest_id:
            return False
    await refresh_activity_snapshot(db, reason=reason)
    return True


async def refresh_issue_statuses(db: Any, issue_ids: Iterable[str] | None = None) -> int:
    """Re-resolve the status columns of snapshot issues after new events."""
    item_repo = get_activity_item_repository(db)
    ids = sorted(set(issue_ids)) if issue_ids is not None else await item_repo.list_issue_ids()
    if not ids:
        return 0
    sync_config = await get_sync_config_repository(db).get_config()
    target_project = sync_config.get("todo_project_name")
    payloads = await item_repo.get_issue_payloads(ids)
    events = await get_issue_status_repository(db).list_events(ids)
    updates = []
    for issue_id in ids:
        if issue_id not in payloads:
            continue
        info = resolve_issue_from_payload(payloads[issue_id], events.get(issue_id, []), target_project)
        updates.append({"id": issue_id, **issue_status_columns(info)})
    return await item_repo.update_issue_statuses(updates)
