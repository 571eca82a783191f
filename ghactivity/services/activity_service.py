"""Activity feed read and write operations.

Reads run against the ``activity_items`` snapshot; every list call passes
through the same pipeline: automation on read, snapshot/cache freshness,
attention sets, predicate, prefetch window, decoration.
"""
from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Iterable

from ghactivity import config
from ghactivity.business_days import business_days_between
from ghactivity.date_utils import normalize_timestamp, utc_now, utc_now_iso
from ghactivity.db.factory import (
    get_activity_item_repository,
    get_cache_state_repository,
    get_issue_status_repository,
    get_project_override_repository,
    get_sync_config_repository,
)
from ghactivity.errors import (
    InvalidIdError,
    InvalidPayloadError,
    ItemNotFoundError,
    ProjectFieldConflictError,
    StatusLockedError,
)
from ghactivity.models import (
    ActivityComment,
    ActivityFilters,
    ActivityItem,
    ActivityItemDetail,
    ActivityListResult,
    ActivityPagination,
    ActivityProjectFields,
    ActivitySummary,
    CacheMetadata,
    JumpIndexEntry,
    PageInfo,
    PrefetchInfo,
    PrefetchPage,
    ProjectFieldUpdate,
)
from ghactivity.observability import record_activity_query, start_span
from ghactivity.services import activity_cache
from ghactivity.services.attention import AttentionSets, AttentionThresholds, resolve_attention_sets
from ghactivity.services.filter_builder import (
    EMPTY,
    build_activity_predicate,
    filter_fingerprint,
    normalize_filters,
)
from ghactivity.services.github_payload import (
    ProjectFields,
    apply_project_overrides,
    comment_body,
    comment_url,
    extract_project_fields,
    label_key,
    safe_json_dict,
)
from ghactivity.services.org_context import OrgContext, load_org_context
from ghactivity.services.prefetch import (
    build_window,
    issue_token,
    token_expires_at,
    total_pages,
    verify_token,
)
from ghactivity.services.snapshot import (
    SNAPSHOT_CACHE_KEY,
    ensure_activity_snapshot,
    refresh_issue_statuses,
    resolve_issue_from_payload,
)
from ghactivity.services.status_automation import ensure_issue_status_automation
from ghactivity.services.status_resolver import resolve_work_timestamps, status_entry_times

logger = logging.getLogger("ghactivity.activity")

EDITABLE_STATUSES = ("no_status", "todo", "in_progress", "done", "pending")
PROJECT_FIELD_KEYS = ("priority", "weight", "initiationOptions", "startDate")
PRIORITY_VALUES = ("P0", "P1", "P2")
WEIGHT_VALUES = ("Heavy", "Medium", "Light")
INITIATION_VALUES = ("Open to Start", "Requires Approval")

_FIELD_LABELS = {
    "priority": "Priority",
    "weight": "Weight",
    "initiationOptions": "Initiation Options",
    "startDate": "Start date",
}
_FIELD_COLUMNS = {
    "priority": ("priority_value", "priority_updated_at"),
    "weight": ("weight_value", "weight_updated_at"),
    "initiationOptions": ("initiation_value", "initiation_updated_at"),
    "startDate": ("start_date_value", "start_date_updated_at"),
}


def _require_id(item_id: Any) -> str:
    text = str(item_id or "").strip()
    if not text:
        raise InvalidIdError("Item id must not be empty")
    return text


# ── Decoration ──────────────────────────────────────────────────────

def _user(users: dict[str, dict], user_id: str | None) -> dict | None:
    if not user_id:
        return None
    row = users.get(user_id) or {}
    return {
        "id": user_id,
        "login": row.get("login"),
        "name": row.get("name"),
        "avatarUrl": row.get("avatar_url"),
    }


def _users(users: dict[str, dict], user_ids: Iterable[str]) -> list[dict]:
    return [_user(users, user_id) for user_id in user_ids if user_id]


def _labels(row: dict) -> list[dict]:
    name_with_owner = row.get("repository_name_with_owner")
    keys = set(row.get("label_keys") or [])
    labels = []
    for name in row.get("label_names") or []:
        key = label_key(name_with_owner, name)
        if keys and key not in keys:
            continue
        labels.append({
            "key": key,
            "name": name,
            "repositoryId": row.get("repository_id"),
            "repositoryNameWithOwner": name_with_owner,
        })
    return labels


def business_metrics(row: dict, now: datetime, org: OrgContext) -> dict[str, int | None]:
    """Business-day ages of one item, measured in the organisation timezone."""

    def days(start: Any, end: Any) -> int | None:
        if not start:
            return None
        return business_days_between(start, end, org.holidays, org.tz)

    closed_end = row.get("closed_at") or row.get("merged_at")
    open_end = closed_end if row.get("status") != "open" and closed_end else now
    metrics: dict[str, int | None] = {
        "businessDaysOpen": days(row.get("created_at"), open_end),
        "businessDaysIdle": days(row.get("updated_at") or row.get("created_at"), now),
        "businessDaysSinceInProgress": None,
        "businessDaysInProgressOpen": None,
    }
    started = row.get("issue_work_started_at")
    if row.get("item_type") == "issue" and started:
        metrics["businessDaysSinceInProgress"] = days(started, now)
        if row.get("closed_at"):
            end = row["closed_at"]
        elif row.get("issue_status_source") == "activity" and row.get("issue_work_completed_at"):
            end = row["issue_work_completed_at"]
        else:
            end = now
        metrics["businessDaysInProgressOpen"] = days(started, end)
    return metrics


def _linked_pull_request(link: dict) -> dict:
    return {
        "id": link["pull_request_id"],
        "number": link.get("pr_number"),
        "title": link.get("pr_title"),
        "state": link.get("pr_state"),
        "status": link.get("pr_status") or "open",
        "url": link.get("pr_url"),
        "repositoryNameWithOwner": link.get("pr_repository_name_with_owner"),
        "mergedAt": link.get("pr_merged_at"),
        "closedAt": link.get("pr_closed_at"),
        "updatedAt": link.get("pr_updated_at"),
    }


def _linked_issue(link: dict) -> dict:
    return {
        "id": link["issue_id"],
        "number": link.get("issue_number"),
        "title": link.get("issue_title"),
        "state": link.get("issue_state"),
        "url": link.get("issue_url"),
        "repositoryNameWithOwner": link.get("issue_repository"),
    }


def _wait_user_ids(sets: AttentionSets, item_ids: Iterable[str]) -> set[str]:
    ids: set[str] = set()
    for item_id in item_ids:
        ids.update(wait.reviewer_id for wait in sets.review_request_details.get(item_id, []) if wait.reviewer_id)
        ids.update(wait.target_user_id for wait in sets.mention_details.get(item_id, []) if wait.target_user_id)
    return ids


async def decorate_items(
    db: Any,
    rows: list[dict],
    *,
    attention: AttentionSets,
    org: OrgContext,
    now: datetime,
) -> list[ActivityItem]:
    """Turn snapshot rows into API items with users, links, flags and metrics."""
    if not rows:
        return []
    item_repo = get_activity_item_repository(db)
    user_ids: set[str] = set()
    for row in rows:
        user_ids.add(row.get("author_id") or "")
        for column in ("assignee_ids", "reviewer_ids", "mentioned_ids", "commenter_ids", "reactor_ids"):
            user_ids.update(row.get(column) or [])
    user_ids |= _wait_user_ids(attention, (row["id"] for row in rows))
    users = await item_repo.lookup_users(sorted(user_ids))

    issue_ids = [row["id"] for row in rows if row.get("item_type") == "issue"]
    pull_request_ids = [row["id"] for row in rows if row.get("item_type") == "pull_request"]
    linked_prs = await activity_cache.get_linked_pull_requests_map(db, issue_ids)
    linked_issues = await activity_cache.get_linked_issues_map(db, pull_request_ids)

    items = []
    for row in rows:
        item_id = row["id"]
        is_issue = row.get("item_type") == "issue"
        review_waits = [
            {**wait.to_dict(), "reviewer": _user(users, wait.reviewer_id)}
            for wait in attention.review_request_details.get(item_id, [])
        ]
        mention_waits = [
            {**wait.to_dict(), "user": _user(users, wait.target_user_id)}
            for wait in attention.mention_details.get(item_id, [])
        ]
        issue_type = (
            {"id": row["issue_type_id"], "name": row.get("issue_type_name")}
            if row.get("issue_type_id") else None
        )
        milestone = (
            {
                "id": row["milestone_id"],
                "title": row.get("milestone_title"),
                "state": row.get("milestone_state"),
                "dueOn": row.get("milestone_due_on"),
                "url": row.get("milestone_url"),
            }
            if row.get("milestone_id") else None
        )
        items.append(ActivityItem(
            id=item_id,
            type=row.get("item_type") or "issue",
            number=row.get("number"),
            title=row.get("title"),
            url=row.get("url"),
            state=row.get("state"),
            status=row.get("status") or "open",
            issueProjectStatus=row.get("issue_display_status") if is_issue else None,
            issueProjectStatusSource=row.get("issue_status_source") if is_issue else None,
            issueProjectStatusLocked=bool(row.get("issue_status_locked")) if is_issue else False,
            issueTodoProjectStatus=row.get("issue_todo_status") if is_issue else None,
            issueActivityStatus=row.get("issue_activity_status") if is_issue else None,
            issuePriority=row.get("issue_priority") if is_issue else None,
            issueWeight=row.get("issue_weight") if is_issue else None,
            repository={
                "id": row.get("repository_id"),
                "name": row.get("repository_name"),
                "nameWithOwner": row.get("repository_name_with_owner"),
            } if row.get("repository_id") else None,
            author=_user(users, row.get("author_id")),
            assignees=_users(users, row.get("assignee_ids") or []),
            reviewers=_users(users, row.get("reviewer_ids") or []),
            mentionedUsers=_users(users, row.get("mentioned_ids") or []),
            commenters=_users(users, row.get("commenter_ids") or []),
            reactors=_users(users, row.get("reactor_ids") or []),
            labels=_labels(row),
            issueType=issue_type,
            milestone=milestone,
            hasParentIssue=int(row.get("tracked_in_issues_count") or 0) > 0,
            hasSubIssues=int(row.get("tracked_issues_count") or 0) > 0,
            linkedPullRequests=[_linked_pull_request(link) for link in linked_prs.get(item_id, [])],
            linkedIssues=[_linked_issue(link) for link in linked_issues.get(item_id, [])],
            createdAt=row.get("created_at"),
            updatedAt=row.get("updated_at"),
            closedAt=row.get("closed_at"),
            mergedAt=row.get("merged_at"),
            attention=attention.flags_for(item_id),
            reviewRequestWaits=review_waits,
            mentionWaits=mention_waits,
            **business_metrics(row, now, org),
        ))
    return items


# ── Reads ───────────────────────────────────────────────────────────

async def _cache_metadata(db: Any, org: OrgContext) -> CacheMetadata:
    states = await get_cache_state_repository(db).list_states(
        [SNAPSHOT_CACHE_KEY, activity_cache.FILTER_OPTIONS_CACHE_KEY]
    )
    snapshot = states.get(SNAPSHOT_CACHE_KEY) or {}
    caches = states.get(activity_cache.FILTER_OPTIONS_CACHE_KEY) or {}
    return CacheMetadata(
        snapshotGeneratedAt=snapshot.get("generated_at"),
        cachesGeneratedAt=caches.get("generated_at"),
        syncRunId=snapshot.get("sync_run_id"),
        lastSyncCompletedAt=org.last_sync_completed_at,
        timezone=org.timezone_name,
    )


async def _prepare_read(db: Any, *, reason: str) -> bool:
    """Bring the snapshot and caches up to date; True when nothing was rebuilt."""
    if config.AUTOMATION_ON_READ:
        try:
            await ensure_issue_status_automation(db, trigger=reason)
        except Exception:
            logger.exception("Issue status automation failed during %s; serving current data", reason)
    rebuilt_snapshot = await ensure_activity_snapshot(db, reason=reason)
    rebuilt_caches = await activity_cache.ensure_activity_caches(db, reason=reason)
    return not (rebuilt_snapshot or rebuilt_caches)


async def _resolve_predicate(db: Any, filters: ActivityFilters, org: OrgContext, now: datetime):
    attention = await resolve_attention_sets(
        db,
        now=now,
        thresholds=AttentionThresholds.from_values(filters.thresholds.model_dump()),
        holidays=org.holidays,
        tz=org.tz,
        excluded_repository_ids=org.excluded_repository_ids,
        excluded_user_ids=org.excluded_user_ids,
        target_project=org.todo_project_name,
    )
    predicate = build_activity_predicate(
        filters,
        attention,
        excluded_repository_ids=org.excluded_repository_ids,
        dialect=get_activity_item_repository(db).dialect,
    )
    return attention, predicate


async def list_activity_items(
    db: Any,
    filters: ActivityFilters | dict | None = None,
    pagination: ActivityPagination | None = None,
    *,
    now: datetime | None = None,
) -> ActivityListResult:
    """One page of the feed plus a prefetch window and its signed token."""
    started = time.monotonic()
    filters = normalize_filters(filters)
    pagination = pagination or ActivityPagination()
    fingerprint = filter_fingerprint(filters)
    result = "success"
    cache_hit = False
    try:
        cache_hit = await _prepare_read(db, reason="activity-read")
        now = now or utc_now()
        org = await load_org_context(db)
        item_repo = get_activity_item_repository(db)

        with start_span("activity.list", {"page": pagination.page, "per_page": pagination.perPage}):
            attention, predicate = await _resolve_predicate(db, filters, org, now)
            window = build_window(pagination.page, pagination.perPage, pagination.prefetchPages)

            if predicate is EMPTY:
                rows: list[dict] = []
            else:
                if filters.jumpToDate:
                    cutoff = normalize_timestamp(filters.jumpToDate)
                    newer = await item_repo.count_newer_than(predicate, cutoff)
                    window = build_window(newer // window.per_page + 1, window.per_page, window.requested_pages)
                rows = await item_repo.list_items(predicate, window.fetch_limit, window.offset)

            pages = window.split(rows)
            decorated = await decorate_items(
                db, [row for page in pages for row in page], attention=attention, org=org, now=now
            )

        prefetch_pages = []
        cursor = 0
        for index, page_rows in enumerate(pages):
            prefetch_pages.append(PrefetchPage(
                page=window.page + index,
                items=decorated[cursor:cursor + len(page_rows)],
            ))
            cursor += len(page_rows)

        buffered = window.buffered_pages(len(rows))
        token, token_payload = issue_token(window, fingerprint, buffered, now=now)
        current = prefetch_pages[0].items if prefetch_pages else []
        return ActivityListResult(
            items=current,
            pageInfo=PageInfo(
                page=window.page,
                perPage=window.per_page,
                hasMore=len(rows) > window.per_page,
            ),
            cacheMetadata=await _cache_metadata(db, org),
            prefetch=PrefetchInfo(
                token=token,
                filterFingerprint=fingerprint,
                page=window.page,
                perPage=window.per_page,
                requestedPages=window.requested_pages,
                bufferedPages=buffered,
                hasMore=window.has_more(len(rows)),
                pages=prefetch_pages,
                expiresAt=token_expires_at(token_payload),
            ),
        )
    except Exception:
        result = "failed"
        raise
    finally:
        record_activity_query(result, (time.monotonic() - started) * 1000, cache_hit=cache_hit)


async def get_summary(
    db: Any,
    token: str | None,
    filters: ActivityFilters | dict | None = None,
    page: int | None = None,
    *,
    now: datetime | None = None,
) -> ActivitySummary:
    """Totals and the jump index for a previously issued prefetch token."""
    filters = normalize_filters(filters)
    now = now or utc_now()
    verified = verify_token(token, filter_fingerprint(filters), now=now)
    current_page = max(1, int(page)) if page is not None else verified.page

    await ensure_activity_snapshot(db, reason="activity-summary")
    org = await load_org_context(db)
    _, predicate = await _resolve_predicate(db, filters, org, now)
    if predicate is EMPTY:
        return ActivitySummary(totalCount=0, totalPages=0, perPage=verified.perPage, page=current_page)

    item_repo = get_activity_item_repository(db)
    count = await item_repo.count_items(predicate)
    index = await item_repo.page_index(predicate, verified.perPage, config.JUMP_INDEX_LIMIT)
    return ActivitySummary(
        totalCount=count,
        totalPages=total_pages(count, verified.perPage),
        perPage=verified.perPage,
        page=current_page,
        jumpIndex=[
            JumpIndexEntry(
                page=(int(entry["rn"]) - 1) // verified.perPage + 1,
                itemId=entry["id"],
                updatedAt=entry.get("updated_at") or entry.get("created_at"),
            )
            for entry in index
        ],
    )


async def get_filter_options(db: Any) -> dict[str, Any]:
    await ensure_activity_snapshot(db, reason="filter-options")
    return await activity_cache.get_filter_options(db)


def _project_fields_model(fields: ProjectFields) -> ActivityProjectFields:
    return ActivityProjectFields(
        priority=fields.priority,
        priorityUpdatedAt=fields.priority_updated_at,
        weight=fields.weight,
        weightUpdatedAt=fields.weight_updated_at,
        initiationOptions=fields.initiation_options,
        initiationOptionsUpdatedAt=fields.initiation_options_updated_at,
        startDate=fields.start_date,
        startDateUpdatedAt=fields.start_date_updated_at,
    )


async def _current_project_fields(db: Any, issue_id: str, target_project: str | None) -> ProjectFields:
    payloads = await get_activity_item_repository(db).get_issue_payloads([issue_id])
    overrides = await get_project_override_repository(db).get_overrides([issue_id])
    return apply_project_overrides(
        extract_project_fields(safe_json_dict(payloads.get(issue_id)), target_project),
        overrides.get(issue_id),
    )


async def get_item_detail(db: Any, item_id: str, *, now: datetime | None = None) -> ActivityItemDetail:
    """A single item with its body, comments and status history."""
    item_id = _require_id(item_id)
    await ensure_activity_snapshot(db, reason="activity-detail")
    item_repo = get_activity_item_repository(db)
    row = await item_repo.get_item(item_id)
    if row is None:
        raise ItemNotFoundError(f"Activity item {item_id} not found")

    now = now or utc_now()
    org = await load_org_context(db)
    attention = await resolve_attention_sets(
        db,
        now=now,
        holidays=org.holidays,
        tz=org.tz,
        excluded_repository_ids=org.excluded_repository_ids,
        excluded_user_ids=org.excluded_user_ids,
        target_project=org.todo_project_name,
    )
    item = (await decorate_items(db, [row], attention=attention, org=org, now=now))[0]

    comments = [
        ActivityComment(
            id=comment["id"],
            author={
                "id": comment["author_id"],
                "login": comment.get("author_login"),
                "name": comment.get("author_name"),
                "avatarUrl": comment.get("author_avatar_url"),
            } if comment.get("author_id") else None,
            body=comment_body(comment.get("data")),
            url=comment_url(comment.get("data")),
            reviewId=comment.get("review_id"),
            createdAt=normalize_timestamp(comment.get("github_created_at")),
            updatedAt=normalize_timestamp(comment.get("github_updated_at")),
        )
        for comment in await item_repo.list_item_comments(item_id)
    ]

    detail = ActivityItemDetail(item=item, body=row.get("body_text") or "", comments=comments)
    if row.get("item_type") == "issue":
        payloads = await item_repo.get_issue_payloads([item_id])
        events = await get_issue_status_repository(db).list_events([item_id])
        info = resolve_issue_from_payload(payloads.get(item_id), events.get(item_id, []), org.todo_project_name)
        work = resolve_work_timestamps(info)
        detail.todoStatusTimes = status_entry_times(info.project_events)
        detail.activityStatusTimes = status_entry_times(info.activity_events)
        detail.workStartedAt = work.started_at
        detail.workCompletedAt = work.completed_at
        detail.projectFields = _project_fields_model(
            await _current_project_fields(db, item_id, org.todo_project_name)
        )
    return detail


# ── Writes ──────────────────────────────────────────────────────────

async def _require_issue(db: Any, item_id: str) -> dict:
    await ensure_activity_snapshot(db, reason="activity-write")
    row = await get_activity_item_repository(db).get_item(item_id)
    if row is None or row.get("item_type") != "issue":
        raise ItemNotFoundError(f"Issue {item_id} not found")
    return row


async def set_issue_status(db: Any, item_id: str, status: str) -> ActivityItemDetail:
    """Record a manual activity status; ``no_status`` clears the activity timeline."""
    item_id = _require_id(item_id)
    if status not in EDITABLE_STATUSES:
        raise InvalidPayloadError(f"Missing or invalid status value: {status!r}")
    row = await _require_issue(db, item_id)
    if row.get("issue_status_locked"):
        raise StatusLockedError("Status managed by the to-do list project", row.get("issue_todo_status"))

    repo = get_issue_status_repository(db)
    if status == "no_status":
        await repo.clear_statuses(item_id)
    else:
        await repo.record_status(item_id, status, source="manual")
    await refresh_issue_statuses(db, [item_id])
    logger.info("Issue %s activity status set to %s", item_id, status)
    return await get_item_detail(db, item_id)


async def clear_issue_status(db: Any, item_id: str) -> ActivityItemDetail:
    item_id = _require_id(item_id)
    await _require_issue(db, item_id)
    deleted = await get_issue_status_repository(db).clear_statuses(item_id)
    await refresh_issue_statuses(db, [item_id])
    logger.info("Cleared %d activity status events of issue %s", deleted, item_id)
    return await get_item_detail(db, item_id)


def sanitize_project_field(key: str, raw: Any) -> str | None:
    """Validate one submitted project field value; blank means clear."""
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise InvalidPayloadError(f"{_FIELD_LABELS[key]} value is invalid")
    text = raw.strip()
    if not text:
        return None
    if key == "priority":
        value = text.upper()
        if value not in PRIORITY_VALUES:
            raise InvalidPayloadError("Priority value is invalid")
        return value
    if key == "weight":
        value = text[:1].upper() + text[1:].lower()
        if value not in WEIGHT_VALUES:
            raise InvalidPayloadError("Weight value is invalid")
        return value
    if key == "initiationOptions":
        if text not in INITIATION_VALUES:
            raise InvalidPayloadError("Initiation Options value is invalid")
        return text
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError as exc:
        raise InvalidPayloadError("Start date value is invalid") from exc


def _comparable(key: str, value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    if not text:
        return None
    if key == "startDate":
        try:
            return date.fromisoformat(text[:10]).isoformat()
        except ValueError:
            return text
    if key == "priority":
        return text.upper()
    if key == "weight":
        return text.lower()
    return text


def _field_value(fields: ProjectFields, key: str) -> str | None:
    return {
        "priority": fields.priority,
        "weight": fields.weight,
        "initiationOptions": fields.initiation_options,
        "startDate": fields.start_date,
    }[key]


async def _store_project_columns(db: Any, issue_id: str, fields: ProjectFields) -> None:
    await get_activity_item_repository(db).update_project_fields(issue_id, {
        "issue_priority": fields.priority,
        "issue_weight": fields.weight,
        "issue_initiation_options": fields.initiation_options,
        "issue_start_date": fields.start_date,
    })


async def update_project_fields(
    db: Any,
    item_id: str,
    update: ProjectFieldUpdate | dict,
) -> ActivityItemDetail:
    """Apply local project field overrides with optimistic concurrency.

    Only submitted fields are touched. When ``expected`` names a field, the
    stored value must still match it or the write is refused.
    """
    item_id = _require_id(item_id)
    if isinstance(update, dict):
        update = ProjectFieldUpdate(**update)
    provided = [key for key in PROJECT_FIELD_KEYS if key in update.model_fields_set]
    if not provided:
        raise InvalidPayloadError("Missing project field values")

    row = await _require_issue(db, item_id)
    if row.get("issue_status_locked") and any(key != "weight" for key in provided):
        raise StatusLockedError("Project fields managed by the to-do list project", row.get("issue_todo_status"))

    sync_config = await get_sync_config_repository(db).get_config()
    target_project = sync_config.get("todo_project_name")
    current = await _current_project_fields(db, item_id, target_project)

    changes: dict[str, str | None] = {}
    for key in provided:
        sanitized = sanitize_project_field(key, getattr(update, key))
        current_value = _comparable(key, _field_value(current, key))
        if current_value == _comparable(key, sanitized):
            continue
        if key in update.expected and _comparable(key, update.expected[key]) != current_value:
            raise ProjectFieldConflictError(
                f"{_FIELD_LABELS[key]} was changed by someone else; reload to see the latest value"
            )
        changes[key] = sanitized

    if changes:
        override_repo = get_project_override_repository(db)
        existing = (await override_repo.get_overrides([item_id])).get(item_id) or {}
        values = {column: existing.get(column) for pair in _FIELD_COLUMNS.values() for column in pair}
        stamp = utc_now_iso()
        for key, value in changes.items():
            value_column, updated_column = _FIELD_COLUMNS[key]
            values[value_column] = value
            values[updated_column] = stamp
        await override_repo.upsert_overrides(item_id, values)
        await _store_project_columns(db, item_id, await _current_project_fields(db, item_id, target_project))
        logger.info("Project fields of issue %s updated: %s", item_id, ", ".join(sorted(changes)))
    return await get_item_detail(db, item_id)


async def clear_project_fields(db: Any, item_id: str) -> ActivityItemDetail:
    item_id = _require_id(item_id)
    row = await _require_issue(db, item_id)
    if row.get("issue_status_locked"):
        raise StatusLockedError("Project fields managed by the to-do list project", row.get("issue_todo_status"))
    await get_project_override_repository(db).clear_overrides(item_id)
    sync_config = await get_sync_config_repository(db).get_config()
    await _store_project_columns(
        db, item_id, await _current_project_fields(db, item_id, sync_config.get("todo_project_name"))
    )
    logger.info("Project field overrides of issue %s cleared", item_id)
    return await get_item_detail(db, item_id)
