"""Attention insights: items that need a human to follow up.

Six categories are recomputed on every call from raw rows, thresholds in
business days and the organisation holiday calendar:

* stale open pull requests (age since creation)
* idle open pull requests (time since last update)
* review requests without any reviewer reaction since the request
* backlog issues that never reached in_progress
* in-progress issues that have not completed
* mentions the mentioned user has not answered
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Callable, Iterable, Sequence, TypeVar

from ghactivity.business_days import EMPTY_HOLIDAY_SET, business_days_between
from ghactivity.date_utils import normalize_timestamp, parse_datetime, utc_now
from ghactivity.db.factory import (
    get_activity_item_repository,
    get_attention_repository,
    get_issue_status_repository,
    get_mention_classification_repository,
)
from ghactivity.errors import InvalidFilterError, InvalidIdError, ItemNotFoundError
from ghactivity.observability import start_span
from ghactivity.services.github_payload import (
    comment_body,
    comment_excerpt,
    comment_url,
    extract_mentions,
    parse_item_payload,
)
from ghactivity.services.org_context import load_org_context
from ghactivity.services.snapshot import resolve_issue_from_payload
from ghactivity.services.status_resolver import resolve_work_timestamps

logger = logging.getLogger("ghactivity.attention")

ATTENTION_CATEGORIES = (
    "unanswered_mentions",
    "review_requests_pending",
    "pr_open_too_long",
    "pr_inactive",
    "issue_backlog",
    "issue_stalled",
)
NO_ATTENTION = "no_attention"
MANUAL_DECISIONS = ("suppress", "force", "clear")

DEFAULT_UNANSWERED_MENTION_DAYS = 5
DEFAULT_REVIEW_REQUEST_DAYS = 5
DEFAULT_STALE_PR_DAYS = 20
DEFAULT_IDLE_PR_DAYS = 10
DEFAULT_BACKLOG_ISSUE_DAYS = 40
DEFAULT_STALLED_ISSUE_DAYS = 20

T = TypeVar("T")


@dataclass(frozen=True)
class AttentionThresholds:
    unanswered_mention_days: int = DEFAULT_UNANSWERED_MENTION_DAYS
    review_request_days: int = DEFAULT_REVIEW_REQUEST_DAYS
    stale_pr_days: int = DEFAULT_STALE_PR_DAYS
    idle_pr_days: int = DEFAULT_IDLE_PR_DAYS
    backlog_issue_days: int = DEFAULT_BACKLOG_ISSUE_DAYS
    stalled_issue_days: int = DEFAULT_STALLED_ISSUE_DAYS

    @classmethod
    def from_values(cls, values: dict[str, Any] | None) -> "AttentionThresholds":
        """Build thresholds from camelCase overrides; missing values keep defaults."""
        values = values or {}

        def pick(key: str, default: int, floor: int = 1) -> int:
            raw = values.get(key)
            if raw is None:
                return default
            return max(floor, int(raw))

        return cls(
            # Mentions never alert earlier than the default.
            unanswered_mention_days=pick(
                "unansweredMentionDays", DEFAULT_UNANSWERED_MENTION_DAYS, DEFAULT_UNANSWERED_MENTION_DAYS
            ),
            review_request_days=pick("reviewRequestDays", DEFAULT_REVIEW_REQUEST_DAYS),
            stale_pr_days=pick("stalePrDays", DEFAULT_STALE_PR_DAYS),
            idle_pr_days=pick("idlePrDays", DEFAULT_IDLE_PR_DAYS),
            backlog_issue_days=pick("backlogIssueDays", DEFAULT_BACKLOG_ISSUE_DAYS),
            stalled_issue_days=pick("stalledIssueDays", DEFAULT_STALLED_ISSUE_DAYS),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "unansweredMentionDays": self.unanswered_mention_days,
            "reviewRequestDays": self.review_request_days,
            "stalePrDays": self.stale_pr_days,
            "idlePrDays": self.idle_pr_days,
            "backlogIssueDays": self.backlog_issue_days,
            "stalledIssueDays": self.stalled_issue_days,
        }


@dataclass(frozen=True)
class ReviewRequestWait:
    request_id: str
    pull_request_id: str
    reviewer_id: str | None
    requested_at: str | None
    waiting_days: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "pullRequestId": self.pull_request_id,
            "reviewerId": self.reviewer_id,
            "requestedAt": self.requested_at,
            "waitingDays": self.waiting_days,
        }


@dataclass(frozen=True)
class MentionWait:
    comment_id: str
    item_id: str
    target_user_id: str | None
    mentioned_at: str | None
    waiting_days: int
    comment_excerpt: str = ""
    comment_url: str | None = None
    author_id: str | None = None
    requires_response: bool | None = None
    manual_decision: str | None = None
    manual_decision_is_stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "commentId": self.comment_id,
            "itemId": self.item_id,
            "targetUserId": self.target_user_id,
            "mentionedAt": self.mentioned_at,
            "waitingDays": self.waiting_days,
            "commentExcerpt": self.comment_excerpt,
            "commentUrl": self.comment_url,
            "authorId": self.author_id,
            "requiresResponse": self.requires_response,
            "manualDecision": self.manual_decision,
            "manualDecisionIsStale": self.manual_decision_is_stale,
        }


@dataclass
class AttentionSets:
    stale_open_prs: set[str] = field(default_factory=set)
    idle_open_prs: set[str] = field(default_factory=set)
    stuck_review_requests: set[str] = field(default_factory=set)
    backlog_issues: set[str] = field(default_factory=set)
    stalled_in_progress_issues: set[str] = field(default_factory=set)
    unanswered_mentions: set[str] = field(default_factory=set)
    review_request_details: dict[str, list[ReviewRequestWait]] = field(default_factory=dict)
    mention_details: dict[str, list[MentionWait]] = field(default_factory=dict)
    suppressed_mentions: list[MentionWait] = field(default_factory=list)

    def by_category(self) -> dict[str, set[str]]:
        return {
            "unanswered_mentions": self.unanswered_mentions,
            "review_requests_pending": self.stuck_review_requests,
            "pr_open_too_long": self.stale_open_prs,
            "pr_inactive": self.idle_open_prs,
            "issue_backlog": self.backlog_issues,
            "issue_stalled": self.stalled_in_progress_issues,
        }

    def all_ids(self) -> set[str]:
        result: set[str] = set()
        for ids in self.by_category().values():
            result |= ids
        return result

    def flags_for(self, item_id: str) -> dict[str, bool]:
        return {
            "unansweredMention": item_id in self.unanswered_mentions,
            "reviewRequestPending": item_id in self.stuck_review_requests,
            "staleOpenPr": item_id in self.stale_open_prs,
            "idlePr": item_id in self.idle_open_prs,
            "backlogIssue": item_id in self.backlog_issues,
            "stalledIssue": item_id in self.stalled_in_progress_issues,
        }


def dedupe_waits(records: Iterable[T], key: Callable[[T], str | None]) -> list[T]:
    """Keep the longest wait per key; records without a key are kept as-is."""
    best: dict[Any, T] = {}
    order: list[Any] = []
    for record in records:
        stable = key(record)
        slot = stable if stable is not None else ("record", id(record))
        current = best.get(slot)
        if current is None:
            order.append(slot)
            best[slot] = record
        elif getattr(record, "waiting_days", 0) > getattr(current, "waiting_days", 0):
            best[slot] = record
    return [best[slot] for slot in order]


def _days(start: Any, now: datetime, holidays: frozenset[str], tz: tzinfo | None) -> int | None:
    return business_days_between(start, now, holidays, tz)


def _is_after(candidate: Any, reference: datetime | None) -> bool:
    moment = parse_datetime(candidate)
    if moment is None or reference is None:
        return False
    return moment >= reference


def _manual_decision(record: dict | None) -> str | None:
    if not record or record.get("manual_requires_response") is None:
        return None
    return "force" if record["manual_requires_response"] else "suppress"


def _manual_is_stale(record: dict | None) -> bool:
    if not record or record.get("manual_requires_response") is None:
        return False
    manual_at = parse_datetime(record.get("manual_requires_response_at"))
    evaluated_at = parse_datetime(record.get("last_evaluated_at"))
    return manual_at is not None and evaluated_at is not None and evaluated_at > manual_at


async def find_pending_mentions(
    db: Any,
    *,
    now: datetime,
    threshold: int,
    holidays: frozenset[str],
    tz: tzinfo | None,
    excluded_repository_ids: Sequence[str],
    excluded_user_ids: Sequence[str],
) -> list[dict[str, Any]]:
    """Mentions with no answer from the target, waiting at least ``threshold`` days.

    Each entry carries the comment row, the container item id, the target
    user id and login, the comment body and ``waiting_days``.
    """
    repo = get_attention_repository(db)
    comments = await repo.list_mention_comments(excluded_repository_ids, excluded_user_ids)
    if not comments:
        return []
    logins = await repo.list_users_by_login()
    excluded_users = set(excluded_user_ids)

    raw: list[dict[str, Any]] = []
    for row in comments:
        container = row.get("pull_request_id") or row.get("issue_id")
        mentioned_at = parse_datetime(row.get("mentioned_at"))
        if not container or mentioned_at is None:
            continue
        body = comment_body(row.get("data"))
        for handle in extract_mentions(body):
            target = logins.get(handle)
            if not target or target == row.get("author_id") or target in excluded_users:
                continue
            raw.append({
                "row": row,
                "container": container,
                "target": target,
                "target_login": handle,
                "at": mentioned_at,
                "body": body,
            })
    if not raw:
        return []

    responses = await repo.list_container_responses([entry["container"] for entry in raw])
    reactions = await repo.list_comment_reactions([entry["row"]["comment_id"] for entry in raw])

    pending: list[dict[str, Any]] = []
    for entry in raw:
        comment_id = entry["row"]["comment_id"]
        answered = any(
            response.get("author_id") == entry["target"]
            and response.get("id") != comment_id
            and _is_after(response.get("responded_at"), entry["at"])
            for response in responses.get(entry["container"], [])
        ) or any(
            reaction.get("user_id") == entry["target"]
            and (reaction.get("github_created_at") is None or _is_after(reaction.get("github_created_at"), entry["at"]))
            for reaction in reactions.get(comment_id, [])
        )
        if answered:
            continue
        waiting = _days(entry["at"], now, holidays, tz) or 0
        if waiting < threshold:
            continue
        entry["waiting_days"] = waiting
        pending.append(entry)
    return pending


async def _collect_mentions(
    db: Any,
    *,
    now: datetime,
    threshold: int,
    holidays: frozenset[str],
    tz: tzinfo | None,
    excluded_repository_ids: Sequence[str],
    excluded_user_ids: Sequence[str],
    use_classifier: bool,
) -> tuple[list[MentionWait], list[MentionWait]]:
    """Return (counted, suppressed) unanswered mentions past the threshold."""
    pending = await find_pending_mentions(
        db,
        now=now,
        threshold=threshold,
        holidays=holidays,
        tz=tz,
        excluded_repository_ids=excluded_repository_ids,
        excluded_user_ids=excluded_user_ids,
    )
    if not pending:
        return [], []
    classifications = await get_mention_classification_repository(db).get_many(
        (entry["row"]["comment_id"], entry["target"]) for entry in pending
    )

    counted: list[MentionWait] = []
    suppressed: list[MentionWait] = []
    for entry in pending:
        row = entry["row"]
        record = classifications.get((row["comment_id"], entry["target"]))
        decision = _manual_decision(record)
        ai_verdict = record.get("requires_response") if record else None
        if decision is not None:
            requires_response: bool | None = decision == "force"
        elif use_classifier and ai_verdict is not None:
            requires_response = bool(ai_verdict)
        else:
            requires_response = None
        wait = MentionWait(
            comment_id=row["comment_id"],
            item_id=entry["container"],
            target_user_id=entry["target"],
            mentioned_at=normalize_timestamp(entry["at"]),
            waiting_days=entry["waiting_days"],
            comment_excerpt=comment_excerpt(entry["body"]),
            comment_url=comment_url(row.get("data")),
            author_id=row.get("author_id"),
            requires_response=requires_response,
            manual_decision=decision,
            manual_decision_is_stale=_manual_is_stale(record),
        )
        if requires_response is False:
            suppressed.append(wait)
        else:
            counted.append(wait)
    return counted, suppressed


async def resolve_attention_sets(
    db: Any,
    *,
    now: datetime | None = None,
    thresholds: AttentionThresholds | None = None,
    holidays: frozenset[str] = EMPTY_HOLIDAY_SET,
    tz: tzinfo | None = None,
    excluded_repository_ids: Sequence[str] = (),
    excluded_user_ids: Sequence[str] = (),
    target_project: str | None = None,
    use_classifier: bool = False,
) -> AttentionSets:
    now = now or utc_now()
    thresholds = thresholds or AttentionThresholds()
    repo = get_attention_repository(db)
    sets = AttentionSets()

    with start_span("activity.attention.resolve", {"use_classifier": use_classifier}):
        for row in await repo.list_open_pull_requests(excluded_repository_ids, excluded_user_ids):
            age = _days(row.get("github_created_at"), now, holidays, tz)
            if age is not None and age >= thresholds.stale_pr_days:
                sets.stale_open_prs.add(row["id"])
            idle = _days(row.get("github_updated_at") or row.get("github_created_at"), now, holidays, tz)
            if idle is not None and idle >= thresholds.idle_pr_days:
                sets.idle_open_prs.add(row["id"])

        waits: list[ReviewRequestWait] = []
        for row in await repo.list_pending_review_requests(excluded_repository_ids, excluded_user_ids):
            waiting = _days(row.get("requested_at"), now, holidays, tz)
            if waiting is None or waiting < thresholds.review_request_days:
                continue
            waits.append(ReviewRequestWait(
                request_id=row["id"],
                pull_request_id=row["pull_request_id"],
                reviewer_id=row.get("reviewer_id"),
                requested_at=normalize_timestamp(row.get("requested_at")),
                waiting_days=waiting,
            ))
        by_pr: dict[str, list[ReviewRequestWait]] = {}
        for wait in waits:
            by_pr.setdefault(wait.pull_request_id, []).append(wait)
        for pull_request_id, records in by_pr.items():
            sets.review_request_details[pull_request_id] = dedupe_waits(records, lambda r: r.reviewer_id)
            sets.stuck_review_requests.add(pull_request_id)

        issues = await repo.list_open_issues(excluded_repository_ids, excluded_user_ids)
        events = await get_issue_status_repository(db).list_events([row["id"] for row in issues])
        for row in issues:
            if parse_item_payload(row.get("data"), row.get("url")).is_discussion:
                continue
            info = resolve_issue_from_payload(row.get("data"), events.get(row["id"], []), target_project)
            work = resolve_work_timestamps(info)
            if not work.started_at:
                age = _days(row.get("github_created_at"), now, holidays, tz)
                if age is not None and age >= thresholds.backlog_issue_days:
                    sets.backlog_issues.add(row["id"])
            elif not work.completed_at:
                in_progress = _days(work.started_at, now, holidays, tz)
                if in_progress is not None and in_progress >= thresholds.stalled_issue_days:
                    sets.stalled_in_progress_issues.add(row["id"])

        counted, suppressed = await _collect_mentions(
            db,
            now=now,
            threshold=thresholds.unanswered_mention_days,
            holidays=holidays,
            tz=tz,
            excluded_repository_ids=excluded_repository_ids,
            excluded_user_ids=excluded_user_ids,
            use_classifier=use_classifier,
        )
        by_item: dict[str, list[MentionWait]] = {}
        for wait in counted:
            by_item.setdefault(wait.item_id, []).append(wait)
        for item_id, records in by_item.items():
            sets.mention_details[item_id] = dedupe_waits(records, lambda r: r.target_user_id)
            sets.unanswered_mentions.add(item_id)
        sets.suppressed_mentions = suppressed

    logger.debug(
        "Attention sets resolved: stale=%d idle=%d reviews=%d backlog=%d stalled=%d mentions=%d",
        len(sets.stale_open_prs), len(sets.idle_open_prs), len(sets.stuck_review_requests),
        len(sets.backlog_issues), len(sets.stalled_in_progress_issues), len(sets.unanswered_mentions),
    )
    return sets


def _item_summary(item: dict | None, item_id: str) -> dict[str, Any]:
    item = item or {}
    return {
        "id": item_id,
        "type": item.get("item_type"),
        "number": item.get("number"),
        "title": item.get("title"),
        "url": item.get("url"),
        "repositoryId": item.get("repository_id"),
        "repositoryNameWithOwner": item.get("repository_name_with_owner"),
        "authorId": item.get("author_id"),
        "assigneeIds": item.get("assignee_ids") or [],
        "createdAt": item.get("created_at"),
        "updatedAt": item.get("updated_at"),
    }


async def get_attention_insights(
    db: Any,
    *,
    thresholds: AttentionThresholds | None = None,
    use_classifier: bool = False,
    now: datetime | None = None,
) -> dict[str, Any]:
    """All six categories with their items and wait details."""
    org = await load_org_context(db)
    thresholds = thresholds or AttentionThresholds()
    sets = await resolve_attention_sets(
        db,
        now=now,
        thresholds=thresholds,
        holidays=org.holidays,
        tz=org.tz,
        excluded_repository_ids=org.excluded_repository_ids,
        excluded_user_ids=org.excluded_user_ids,
        target_project=org.todo_project_name,
        use_classifier=use_classifier,
    )
    items = await get_activity_item_repository(db).get_items(list(sets.all_ids()))

    def entries(ids: set[str], details: dict[str, list[Any]] | None = None) -> list[dict[str, Any]]:
        rows = []
        for item_id in sorted(ids, key=lambda value: (items.get(value) or {}).get("created_at") or ""):
            entry = _item_summary(items.get(item_id), item_id)
            if details is not None:
                entry["waits"] = [wait.to_dict() for wait in details.get(item_id, [])]
            rows.append(entry)
        return rows

    return {
        "generatedAt": normalize_timestamp(now or utc_now()),
        "timezone": org.timezone_name,
        "thresholds": thresholds.to_dict(),
        "staleOpenPrs": entries(sets.stale_open_prs),
        "idleOpenPrs": entries(sets.idle_open_prs),
        "stuckReviewRequests": entries(sets.stuck_review_requests, sets.review_request_details),
        "backlogIssues": entries(sets.backlog_issues),
        "stalledInProgressIssues": entries(sets.stalled_in_progress_issues),
        "unansweredMentions": entries(sets.unanswered_mentions, sets.mention_details),
        "suppressedMentions": [wait.to_dict() for wait in sets.suppressed_mentions],
    }


async def set_mention_manual_decision(
    db: Any,
    comment_id: str,
    mentioned_user_id: str,
    decision: str,
) -> dict[str, Any]:
    """Apply ``suppress``/``force``/``clear`` to one mention."""
    comment_id = (comment_id or "").strip()
    mentioned_user_id = (mentioned_user_id or "").strip()
    if not comment_id or not mentioned_user_id:
        raise InvalidIdError("commentId and mentionedUserId are required")
    if decision not in MANUAL_DECISIONS:
        raise InvalidFilterError(f"Unknown manual decision: {decision!r}")
    if await get_attention_repository(db).get_comment(comment_id) is None:
        raise ItemNotFoundError(f"Comment not found: {comment_id}")

    value = {"suppress": False, "force": True, "clear": None}[decision]
    repo = get_mention_classification_repository(db)
    await repo.set_manual_decision(comment_id, mentioned_user_id, value)
    record = (await repo.get_many([(comment_id, mentioned_user_id)])).get((comment_id, mentioned_user_id)) or {}
    logger.info("Mention %s/%s manual decision set to %s", comment_id, mentioned_user_id, decision)
    return {
        "commentId": comment_id,
        "mentionedUserId": mentioned_user_id,
        "manualDecision": _manual_decision(record),
        "manualDecisionAt": record.get("manual_requires_response_at"),
        "requiresResponse": record.get("requires_response"),
        "lastEvaluatedAt": record.get("last_evaluated_at"),
    }
