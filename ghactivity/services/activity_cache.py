"""Derived lookup caches: filter options and issue/pull-request link maps.

All three caches belong to one generation, identified by the latest
completed sync run. A refresh rebuilds them together in one transaction so
readers never see link maps from different generations.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Iterable

from ghactivity.date_utils import utc_now_iso
from ghactivity.db.factory import (
    get_activity_cache_repository,
    get_cache_state_repository,
    get_sync_config_repository,
)
from ghactivity.observability import record_cache_refresh, start_span
from ghactivity.services.github_payload import label_key, parse_item_payload

logger = logging.getLogger("ghactivity.cache")

FILTER_OPTIONS_CACHE_KEY = "activity-filter-options"
ISSUE_LINKS_CACHE_KEY = "activity-issue-links"
PULL_REQUEST_LINKS_CACHE_KEY = "activity-pull-request-links"
CACHE_KEYS = (FILTER_OPTIONS_CACHE_KEY, ISSUE_LINKS_CACHE_KEY, PULL_REQUEST_LINKS_CACHE_KEY)

BOT_LOGINS = ("octoaide", "codecov", "dependabot")
ISSUE_PRIORITY_OPTIONS = ["P0", "P1", "P2"]
ISSUE_WEIGHT_OPTIONS = ["Heavy", "Medium", "Light"]

_inflight: asyncio.Task | None = None
_inflight_lock = asyncio.Lock()
_background_tasks: set[asyncio.Task] = set()


def _user_sort_key(user: dict[str, Any]) -> tuple[int, int, str]:
    login = str(user.get("login") or "").lower()
    if login in BOT_LOGINS:
        return (0, BOT_LOGINS.index(login), login)
    return (1, 0, login)


def build_filter_options(sources: dict[str, list[dict]], excluded_user_ids: Iterable[str] = ()) -> dict[str, Any]:
    """Enumerations offered by the feed's filter controls."""
    repositories = {row["id"]: row for row in sources.get("repositories", [])}
    excluded = set(excluded_user_ids)

    labels: dict[str, dict[str, Any]] = {}
    issue_types: dict[str, dict[str, Any]] = {}
    milestones: dict[str, dict[str, Any]] = {}
    for kind in ("issues", "pull_requests"):
        for row in sources.get(kind, []):
            payload = parse_item_payload(row.get("data"), row.get("url"))
            repo = repositories.get(row.get("repository_id")) or {}
            name_with_owner = repo.get("name_with_owner")
            for name in payload.label_names:
                key = label_key(name_with_owner, name)
                labels.setdefault(key, {
                    "key": key,
                    "name": name,
                    "repositoryId": row.get("repository_id"),
                    "repositoryNameWithOwner": name_with_owner,
                })
            if kind != "issues" or payload.is_discussion:
                continue
            if payload.issue_type_id:
                issue_types.setdefault(payload.issue_type_id, {
                    "id": payload.issue_type_id,
                    "name": payload.issue_type_name,
                })
            milestone_id = payload.milestone.get("id")
            if milestone_id:
                milestones.setdefault(milestone_id, {
                    "id": milestone_id,
                    "title": payload.milestone.get("title"),
                    "state": payload.milestone.get("state"),
                    "dueOn": payload.milestone.get("dueOn"),
                    "url": payload.milestone.get("url"),
                })

    users = [
        {
            "id": row["id"],
            "login": row.get("login"),
            "name": row.get("name"),
            "avatarUrl": row.get("avatar_url"),
        }
        for row in sources.get("users", [])
        if row["id"] not in excluded
    ]
    users.sort(key=_user_sort_key)

    return {
        "repositories": [
            {"id": row["id"], "name": row.get("name"), "nameWithOwner": row.get("name_with_owner")}
            for row in sources.get("repositories", [])
        ],
        "labels": sorted(labels.values(), key=lambda label: label["key"].lower()),
        "users": users,
        "issueTypes": sorted(issue_types.values(), key=lambda entry: str(entry.get("name") or "").lower()),
        "milestones": sorted(milestones.values(), key=lambda entry: str(entry.get("title") or "").lower()),
        "issuePriorities": list(ISSUE_PRIORITY_OPTIONS),
        "issueWeights": list(ISSUE_WEIGHT_OPTIONS),
    }


async def _latest_run_id(db: Any) -> str | None:
    latest_run = await get_sync_config_repository(db).get_latest_completed_run()
    return (latest_run or {}).get("id")


async def caches_are_fresh(db: Any) -> bool:
    latest_id = await _latest_run_id(db)
    states = await get_cache_state_repository(db).list_states(list(CACHE_KEYS))
    return all(
        (states.get(key) or {}).get("generated_at") and (states.get(key) or {}).get("sync_run_id") == latest_id
        for key in CACHE_KEYS
    )


async def refresh_activity_caches(db: Any, *, reason: str = "manual") -> dict[str, Any]:
    """Rebuild every cache from the raw tables in a single transaction."""
    started = time.monotonic()
    cache_repo = get_activity_cache_repository(db)
    sync_config = await get_sync_config_repository(db).get_config()
    sync_run_id = await _latest_run_id(db)
    with start_span("activity.caches.refresh", {"reason": reason}):
        try:
            sources = await cache_repo.load_option_sources()
            filter_options = build_filter_options(sources, sync_config.get("excluded_user_ids") or [])
            issue_links = await cache_repo.query_issue_links()
            pull_request_links = await cache_repo.query_pull_request_links()
            generated_at = utc_now_iso()
            counts = {
                FILTER_OPTIONS_CACHE_KEY: sum(
                    len(value) for value in filter_options.values() if isinstance(value, list)
                ),
                ISSUE_LINKS_CACHE_KEY: len(issue_links),
                PULL_REQUEST_LINKS_CACHE_KEY: len(pull_request_links),
            }
            await cache_repo.replace_all(
                filter_options=filter_options,
                issue_links=issue_links,
                pull_request_links=pull_request_links,
                states={
                    key: {
                        "generated_at": generated_at,
                        "sync_run_id": sync_run_id,
                        "item_count": counts[key],
                        "metadata": {"reason": reason},
                    }
                    for key in CACHE_KEYS
                },
            )
        except Exception:
            duration_ms = (time.monotonic() - started) * 1000
            for key in CACHE_KEYS:
                record_cache_refresh(key, "failed", duration_ms)
            raise

    duration_ms = (time.monotonic() - started) * 1000
    for key in CACHE_KEYS:
        record_cache_refresh(key, "success", duration_ms)
    logger.info(
        "Activity caches refreshed (reason=%s, links=%d/%d, %.0fms)",
        reason, len(issue_links), len(pull_request_links), duration_ms,
    )
    return {
        "generatedAt": generated_at,
        "syncRunId": sync_run_id,
        "counts": counts,
        "durationMs": round(duration_ms, 2),
    }


async def ensure_activity_caches(db: Any, *, reason: str = "read", force: bool = False) -> bool:
    """Refresh when stale; concurrent callers await the same in-flight refresh."""
    global _inflight
    if not force and await caches_are_fresh(db):
        return False

    async with _inflight_lock:
        task = _inflight
        if task is None or task.done():
            task = asyncio.create_task(refresh_activity_caches(db, reason=reason))
            _inflight = task
    try:
        await asyncio.shield(task)
    finally:
        async with _inflight_lock:
            if _inflight is task and task.done():
                _inflight = None
    return True


def _schedule_background_refresh(db: Any, reason: str) -> None:
    async def runner() -> None:
        try:
            await ensure_activity_caches(db, reason=reason)
        except Exception:
            logger.exception("Background activity cache refresh failed")

    task = asyncio.create_task(runner())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _group(rows: list[dict], key: str) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    for row in rows:
        grouped.setdefault(row[key], []).append(row)
    return grouped


async def get_linked_pull_requests_map(db: Any, issue_ids: list[str]) -> dict[str, list[dict]]:
    ids = sorted(set(issue_ids))
    if not ids:
        return {}
    repo = get_activity_cache_repository(db)
    if await caches_are_fresh(db):
        return await repo.get_issue_links(ids)
    logger.info("Issue link cache is stale; answering from a direct query")
    _schedule_background_refresh(db, "stale-read")
    return _group(await repo.query_issue_links(ids), "issue_id")


async def get_linked_issues_map(db: Any, pull_request_ids: list[str]) -> dict[str, list[dict]]:
    ids = sorted(set(pull_request_ids))
    if not ids:
        return {}
    repo = get_activity_cache_repository(db)
    if await caches_are_fresh(db):
        return await repo.get_pull_request_links(ids)
    logger.info("Pull request link cache is stale; answering from a direct query")
    _schedule_background_refresh(db, "stale-read")
    return _group(await repo.query_pull_request_links(ids), "pull_request_id")


async def get_filter_options(db: Any) -> dict[str, Any]:
    await ensure_activity_caches(db, reason="filter-options")
    options = await get_activity_cache_repository(db).get_filter_options()
    if options is None:
        logger.warning("Filter options cache is empty after refresh; building inline")
        sync_config = await get_sync_config_repository(db).get_config()
        sources = await get_activity_cache_repository(db).load_option_sources()
        options = build_filter_options(sources, sync_config.get("excluded_user_ids") or [])
    return options


async def get_cache_status(db: Any) -> dict[str, Any]:
    latest_id = await _latest_run_id(db)
    states = await get_cache_state_repository(db).list_states(list(CACHE_KEYS))
    return {
        "latestSyncRunId": latest_id,
        "caches": [
            {
                "cacheKey": key,
                "generatedAt": (states.get(key) or {}).get("generated_at"),
                "syncRunId": (states.get(key) or {}).get("sync_run_id"),
                "itemCount": int((states.get(key) or {}).get("item_count") or 0),
                "fresh": bool((states.get(key) or {}).get("generated_at"))
                and (states.get(key) or {}).get("sync_run_id") == latest_id,
            }
            for key in CACHE_KEYS
        ],
    }
