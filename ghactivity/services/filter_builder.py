"""Activity filter validation, normalization and predicate compilation."""
from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Iterable

from ghactivity.date_utils import parse_datetime
from ghactivity.db.query_builder import Clause, PostgresDialect, SqliteDialect, and_, not_, or_
from ghactivity.errors import InvalidFilterError
from ghactivity.models import ActivityFilters
from ghactivity.services.attention import ATTENTION_CATEGORIES, NO_ATTENTION, AttentionSets
from ghactivity.services.status_resolver import ISSUE_PROJECT_STATUSES

logger = logging.getLogger("ghactivity.activity")

ITEM_TYPES = ("issue", "pull_request", "discussion")
BASE_STATUSES = ("open", "closed", "merged")
PULL_REQUEST_STATUS_MAP = {"pr_open": "open", "pr_merged": "merged", "pr_closed": "closed"}
ISSUE_BASE_STATUS_MAP = {"issue_open": "open", "issue_closed": "closed"}
LINKED_ISSUE_STATES = ("has_parent", "has_sub")
ISSUE_PRIORITIES = ("P0", "P1", "P2")
ISSUE_WEIGHTS = ("Heavy", "Medium", "Light")
THRESHOLD_KEYS = (
    "unansweredMentionDays",
    "reviewRequestDays",
    "stalePrDays",
    "idlePrDays",
    "backlogIssueDays",
    "stalledIssueDays",
)

# (filter field, column) in clause order; author is a scalar column.
PEOPLE_FILTERS = (
    ("authorIds", "author_id"),
    ("assigneeIds", "assignee_ids"),
    ("reviewerIds", "reviewer_ids"),
    ("mentionedUserIds", "mentioned_ids"),
    ("commenterIds", "commenter_ids"),
    ("reactorIds", "reactor_ids"),
)

LIST_FIELDS = (
    "types", "repositoryIds", "labelKeys", "issueTypeIds", "issuePriorities", "issueWeights",
    "milestoneIds", "pullRequestStatuses", "issueBaseStatuses", "linkedIssueStates",
    "authorIds", "assigneeIds", "reviewerIds", "mentionedUserIds", "commenterIds", "reactorIds",
    "maintainerIds", "statuses", "attention",
)

# Returned instead of a predicate when the selection can only match nothing.
EMPTY = Clause("1 = 0")

Dialect = SqliteDialect | PostgresDialect


def _clean(values: Iterable[Any] | None) -> list[str]:
    return sorted({str(value).strip() for value in values or [] if str(value or "").strip()})


def _check_enum(name: str, values: list[str], allowed: Iterable[str]) -> None:
    allowed_set = set(allowed)
    unknown = [value for value in values if value not in allowed_set]
    if unknown:
        raise InvalidFilterError(f"Unknown {name} value(s): {', '.join(unknown)}")


def normalize_filters(filters: ActivityFilters | dict | None) -> ActivityFilters:
    """Validate and canonicalize filters; raises ``InvalidFilterError``."""
    if filters is None:
        filters = ActivityFilters()
    elif isinstance(filters, dict):
        filters = ActivityFilters(**filters)

    data = filters.model_dump()
    for name in LIST_FIELDS:
        data[name] = _clean(data.get(name))

    _check_enum("type", data["types"], ITEM_TYPES)
    _check_enum("attention", data["attention"], (*ATTENTION_CATEGORIES, NO_ATTENTION))
    _check_enum("status", data["statuses"], (*BASE_STATUSES, *ISSUE_PROJECT_STATUSES))
    _check_enum("pullRequestStatus", data["pullRequestStatuses"], PULL_REQUEST_STATUS_MAP)
    _check_enum("issueBaseStatus", data["issueBaseStatuses"], ISSUE_BASE_STATUS_MAP)
    _check_enum("linkedIssueState", data["linkedIssueStates"], LINKED_ISSUE_STATES)
    _check_enum("issuePriority", data["issuePriorities"], ISSUE_PRIORITIES)
    _check_enum("issueWeight", data["issueWeights"], ISSUE_WEIGHTS)

    search = (data.get("search") or "").strip()
    data["search"] = search or None

    jump = (data.get("jumpToDate") or "").strip()
    if jump and parse_datetime(jump) is None:
        raise InvalidFilterError(f"Invalid jumpToDate: {jump!r}")
    data["jumpToDate"] = jump or None

    viewer = (data.get("viewerId") or "").strip()
    data["viewerId"] = viewer or None
    if data.get("myTodo") and not data["viewerId"]:
        raise InvalidFilterError("myTodo requires viewerId")

    thresholds = data.get("thresholds") or {}
    for key in THRESHOLD_KEYS:
        value = thresholds.get(key)
        if value is not None and int(value) <= 0:
            raise InvalidFilterError(f"Threshold {key} must be a positive number of days")

    return ActivityFilters(**data)


def filter_fingerprint(filters: ActivityFilters) -> str:
    """SHA-256 over the canonical JSON of non-default filter values."""
    data = filters.model_dump()
    canonical: dict[str, Any] = {}
    for name in LIST_FIELDS:
        values = _clean(data.get(name))
        if values:
            canonical[name] = values
    for name in ("search", "viewerId"):
        if data.get(name):
            canonical[name] = data[name]
    if data.get("myTodo"):
        canonical["myTodo"] = True
    thresholds = {key: value for key, value in (data.get("thresholds") or {}).items() if value is not None}
    if thresholds:
        canonical["thresholds"] = thresholds
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _people_selection(filters: ActivityFilters) -> tuple[list[tuple[str, list[str]]], list[str] | None]:
    """Populated people filters, and their shared id set when all of them agree."""
    populated = [(column, _clean(getattr(filters, name))) for name, column in PEOPLE_FILTERS]
    populated = [(column, ids) for column, ids in populated if ids]
    if not populated:
        return [], None
    baseline = populated[0][1]
    if all(ids == baseline for _, ids in populated):
        return populated, baseline
    return populated, None


def _people_clause(dialect: Dialect, column: str, ids: list[str]) -> Clause:
    if column == "author_id":
        return dialect.in_list("author_id", ids)
    return dialect.overlaps(column, ids)


def _participant(dialect: Dialect, people: list[str]) -> Clause | None:
    return or_(
        dialect.in_list("author_id", people),
        dialect.overlaps("assignee_ids", people),
        dialect.overlaps("reviewer_ids", people),
        dialect.overlaps("maintainer_ids", people),
    )


def _refined_category(
    category: str,
    sets: AttentionSets,
    people: list[str] | None,
    dialect: Dialect,
) -> Clause | None:
    """Membership in one attention set, narrowed to the people's role when given."""
    ids = sorted(sets.by_category()[category])
    if not ids:
        return None
    if not people:
        return dialect.in_list("id", ids)
    wanted = set(people)

    if category == "review_requests_pending":
        matches = [
            item_id for item_id in ids
            if any(wait.reviewer_id in wanted for wait in sets.review_request_details.get(item_id, []))
        ]
        return dialect.in_list("id", matches) if matches else None
    if category == "unanswered_mentions":
        matches = [
            item_id for item_id in ids
            if any(wait.target_user_id in wanted for wait in sets.mention_details.get(item_id, []))
        ]
        return dialect.in_list("id", matches) if matches else None

    membership = dialect.in_list("id", ids)
    if category in ("pr_open_too_long", "pr_inactive"):
        role = _participant(dialect, people)
    elif category == "issue_backlog":
        role = dialect.overlaps("maintainer_ids", people)
    else:
        no_assignee = dialect.array_empty("assignee_ids")
        role = or_(
            dialect.overlaps("assignee_ids", people),
            and_(no_assignee, dialect.overlaps("maintainer_ids", people)),
            and_(no_assignee, dialect.array_empty("maintainer_ids"), dialect.in_list("author_id", people)),
        )
    return and_(membership, role)


def _attention_clause(
    filters: ActivityFilters,
    sets: AttentionSets,
    people: list[str] | None,
    dialect: Dialect,
) -> Clause | None:
    selected = [name for name in filters.attention if name != NO_ATTENTION]
    include_none = NO_ATTENTION in filters.attention

    match = or_(*(_refined_category(name, sets, people, dialect) for name in ATTENTION_CATEGORIES if name in selected))
    if not include_none:
        return match if match is not None else EMPTY

    every = sorted(sets.all_ids())
    none_clause = not_(dialect.in_list("id", every)) if every else None
    if match is None:
        return none_clause
    return or_(match, none_clause) if none_clause is not None else match


def _my_todo_clause(viewer: str, sets: AttentionSets, dialect: Dialect) -> Clause | None:
    issue_open = Clause("item_type = 'issue' AND status = 'open'")
    pr_open = Clause("item_type = 'pull_request' AND status = 'open'")
    mentioned = sorted(
        item_id for item_id, waits in sets.mention_details.items()
        if any(wait.target_user_id == viewer for wait in waits)
    )
    return or_(
        and_(
            issue_open,
            or_(
                dialect.array_contains("assignee_ids", viewer),
                and_(dialect.array_empty("assignee_ids"), dialect.array_contains("maintainer_ids", viewer)),
            ),
        ),
        and_(
            pr_open,
            or_(Clause("author_id = ?", (viewer,)), dialect.array_contains("reviewer_ids", viewer)),
        ),
        dialect.in_list("id", mentioned) if mentioned else None,
    )


def _issue_only(clause: Clause) -> Clause:
    return Clause(f"item_type <> 'issue' OR ({clause.sql})", clause.params)


def _search_clause(search: str, dialect: Dialect) -> Clause:
    comment_body = dialect.json_text("c.data", "body")
    inner = dialect.contains_text(comment_body, search)
    return or_(
        dialect.contains_text("title", search),
        dialect.contains_text("body_text", search),
        Clause(
            "EXISTS (SELECT 1 FROM comments c "
            "WHERE ((item_type IN ('issue', 'discussion') AND c.issue_id = activity_items.id) "
            "OR (item_type = 'pull_request' AND c.pull_request_id = activity_items.id)) "
            f"AND {inner.sql})",
            inner.params,
        ),
    )


def build_activity_predicate(
    filters: ActivityFilters,
    attention: AttentionSets,
    *,
    excluded_repository_ids: Iterable[str] = (),
    dialect: Dialect,
) -> Clause | None:
    """Compile normalized filters into one predicate over ``activity_items``.

    Returns ``None`` when nothing restricts the feed and ``EMPTY`` when the
    attention selection cannot match any item.
    """
    clauses: list[Clause | None] = []

    excluded = _clean(excluded_repository_ids)
    if excluded:
        clauses.append(or_(Clause("repository_id IS NULL"), dialect.not_in_list("repository_id", excluded)))

    if filters.myTodo and filters.viewerId:
        my_todo = _my_todo_clause(filters.viewerId, attention, dialect)
        clauses.append(my_todo if my_todo is not None else EMPTY)

    populated, synced = _people_selection(filters)
    people_consumed = False
    if filters.attention:
        refine_with = synced if any(name != NO_ATTENTION for name in filters.attention) else None
        attention_clause = _attention_clause(filters, attention, refine_with, dialect)
        if attention_clause is EMPTY:
            return EMPTY
        clauses.append(attention_clause)
        people_consumed = refine_with is not None

    if populated and not people_consumed:
        if synced is not None:
            clauses.append(or_(*(_people_clause(dialect, column, synced) for column, _ in populated)))
        else:
            clauses.extend(_people_clause(dialect, column, ids) for column, ids in populated)

    if filters.types:
        clauses.append(dialect.in_list("item_type", filters.types))
    if filters.repositoryIds:
        clauses.append(dialect.in_list("repository_id", filters.repositoryIds))
    if filters.labelKeys:
        clauses.append(dialect.overlaps("label_keys", filters.labelKeys))
    if filters.maintainerIds:
        clauses.append(dialect.overlaps("maintainer_ids", filters.maintainerIds))

    for values, column in (
        (filters.issueTypeIds, "issue_type_id"),
        (filters.issuePriorities, "issue_priority"),
        (filters.issueWeights, "issue_weight"),
        (filters.milestoneIds, "milestone_id"),
    ):
        if values:
            clauses.append(_issue_only(dialect.in_list(column, values)))

    pr_statuses = sorted({PULL_REQUEST_STATUS_MAP[value] for value in filters.pullRequestStatuses})
    if 0 < len(pr_statuses) < len(PULL_REQUEST_STATUS_MAP):
        clause = dialect.in_list("status", pr_statuses)
        clauses.append(Clause(f"item_type <> 'pull_request' OR ({clause.sql})", clause.params))
    issue_statuses = sorted({ISSUE_BASE_STATUS_MAP[value] for value in filters.issueBaseStatuses})
    if len(issue_statuses) == 1:
        clauses.append(_issue_only(dialect.in_list("status", issue_statuses)))

    if "has_sub" in filters.linkedIssueStates:
        clauses.append(Clause("item_type <> 'issue' OR COALESCE(tracked_issues_count, 0) > 0"))
    if "has_parent" in filters.linkedIssueStates:
        clauses.append(Clause("item_type <> 'issue' OR COALESCE(tracked_in_issues_count, 0) > 0"))

    if filters.statuses:
        base = [value for value in filters.statuses if value in BASE_STATUSES]
        project = [value for value in filters.statuses if value in ISSUE_PROJECT_STATUSES]
        if base:
            clauses.append(dialect.in_list("status", base))
        if project:
            clauses.append(_issue_only(dialect.in_list("COALESCE(issue_display_status, 'no_status')", project)))

    if filters.search:
        clauses.append(_search_clause(filters.search, dialect))

    return and_(*clauses)
