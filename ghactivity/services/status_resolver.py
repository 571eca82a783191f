"""Issue lifecycle status resolution.

Two event streams feed an issue's status: the timeline of the organisation's
to-do project board (read from the raw issue payload) and the ``activity``
events recorded by this service (automation and manual updates). A board
status of in_progress/done/pending locks the issue to the board.

Decision table for ``display_status``/``source``:

=================  ================  =========================  ============
todo_status         locked            activity_status            result
=================  ================  =========================  ============
set                 yes               any                        todo_project
set                 no                none                       todo_project
any                 no                set                        activity
none                no                none                       no_status
=================  ================  =========================  ============
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from ghactivity.date_utils import normalize_timestamp, parse_datetime

logger = logging.getLogger("ghactivity.activity")

ISSUE_PROJECT_STATUSES = ("no_status", "todo", "in_progress", "done", "pending", "canceled")
LOCKED_STATUSES = frozenset({"in_progress", "done", "pending"})
SOURCE_TODO_PROJECT = "todo_project"
SOURCE_ACTIVITY = "activity"
SOURCE_NONE = "none"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class StatusEvent:
    status: str
    occurred_at: str


@dataclass(frozen=True)
class IssueStatusInfo:
    todo_status: str | None
    todo_status_at: str | None
    activity_status: str | None
    activity_status_at: str | None
    display_status: str
    source: str
    locked: bool
    timeline_source: str
    project_events: tuple[StatusEvent, ...] = field(default=(), repr=False)
    activity_events: tuple[StatusEvent, ...] = field(default=(), repr=False)

    @property
    def timeline(self) -> tuple[StatusEvent, ...]:
        if self.timeline_source == SOURCE_TODO_PROJECT:
            return self.project_events
        if self.timeline_source == SOURCE_ACTIVITY:
            return self.activity_events
        return ()


@dataclass(frozen=True)
class WorkTimestamps:
    started_at: str | None = None
    completed_at: str | None = None


def normalize_project_target(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    token = value.strip().lower()
    return token or None


def map_project_status(value: Any) -> str:
    """Map free-text board column names onto the issue status vocabulary."""
    if not isinstance(value, str):
        return "no_status"
    normalized = _NON_ALNUM_RE.sub("_", value.strip().lower()).strip("_")
    if not normalized or normalized in {"no", "no_status"}:
        return "no_status"
    if normalized in {"todo", "to_do"}:
        return "todo"
    if "progress" in normalized or normalized == "doing":
        return "in_progress"
    if normalized in {"done", "completed", "complete", "finished", "closed"}:
        return "done"
    if normalized.startswith("pending") or normalized == "waiting":
        return "pending"
    if normalized in {"canceled", "cancelled"}:
        return "canceled"
    return "no_status"


def _project_title(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("title")
    return value


def extract_project_status_events(payload: Any, target_project: str | None) -> list[StatusEvent]:
    """Read the board timeline of ``target_project`` from a raw issue payload."""
    target = normalize_project_target(target_project)
    if not target or not isinstance(payload, dict):
        return []
    history = payload.get("projectStatusHistory")
    if not isinstance(history, list):
        return []

    by_instant: dict[float, StatusEvent] = {}
    for entry in history:
        if not isinstance(entry, dict):
            continue
        if normalize_project_target(_project_title(entry.get("projectTitle"))) != target:
            continue
        status = entry.get("status")
        occurred = parse_datetime(entry.get("occurredAt"))
        if not isinstance(status, str) or not status.strip() or occurred is None:
            logger.debug("Skipping malformed project status entry: %r", entry)
            continue
        by_instant[occurred.timestamp()] = StatusEvent(
            status=map_project_status(status),
            occurred_at=normalize_timestamp(occurred) or "",
        )
    return [by_instant[key] for key in sorted(by_instant)]


def was_tracked_by_project(payload: Any, target_project: str | None) -> bool:
    target = normalize_project_target(target_project)
    if not target or not isinstance(payload, dict):
        return False
    items = payload.get("projectItems")
    nodes = items.get("nodes") if isinstance(items, dict) else None
    if not isinstance(nodes, list):
        return False
    for node in nodes:
        if isinstance(node, dict) and normalize_project_target(_project_title(node.get("project"))) == target:
            return True
    return False


def normalize_events(rows: Iterable[Any]) -> list[StatusEvent]:
    """Coerce stored activity rows into ordered events, dropping malformed ones."""
    events: list[tuple[float, int, StatusEvent]] = []
    for index, row in enumerate(rows or []):
        if isinstance(row, StatusEvent):
            status, occurred_raw = row.status, row.occurred_at
        elif isinstance(row, dict):
            status, occurred_raw = row.get("status"), row.get("occurred_at", row.get("occurredAt"))
        else:
            continue
        occurred = parse_datetime(occurred_raw)
        if status not in ISSUE_PROJECT_STATUSES or occurred is None:
            logger.debug("Skipping malformed activity status row: %r", row)
            continue
        events.append((occurred.timestamp(), index, StatusEvent(status, normalize_timestamp(occurred) or "")))
    events.sort(key=lambda item: (item[0], item[1]))
    return [event for _, _, event in events]


def resolve_issue_status(
    project_events: Iterable[StatusEvent],
    activity_events: Iterable[StatusEvent],
    *,
    tracked: bool = False,
) -> IssueStatusInfo:
    project = tuple(project_events or ())
    activity = tuple(activity_events or ())

    if project:
        todo_status: str | None = project[-1].status
        todo_status_at: str | None = project[-1].occurred_at
    elif tracked:
        todo_status, todo_status_at = "no_status", None
    else:
        todo_status, todo_status_at = None, None

    activity_status = activity[-1].status if activity else None
    activity_status_at = activity[-1].occurred_at if activity else None
    locked = todo_status in LOCKED_STATUSES

    if todo_status is not None and (locked or activity_status is None):
        display_status, source = todo_status, SOURCE_TODO_PROJECT
    elif activity_status is not None and not locked:
        display_status, source = activity_status, SOURCE_ACTIVITY
    elif todo_status is not None:
        display_status, source = todo_status, SOURCE_TODO_PROJECT
    else:
        display_status, source = "no_status", SOURCE_NONE

    if locked:
        timeline_source = SOURCE_TODO_PROJECT
    elif activity:
        timeline_source = SOURCE_ACTIVITY
    elif project:
        timeline_source = SOURCE_TODO_PROJECT
    else:
        timeline_source = SOURCE_NONE

    return IssueStatusInfo(
        todo_status=todo_status,
        todo_status_at=todo_status_at,
        activity_status=activity_status,
        activity_status_at=activity_status_at,
        display_status=display_status,
        source=source,
        locked=locked,
        timeline_source=timeline_source,
        project_events=project,
        activity_events=activity,
    )


def resolve_work_timestamps(info: IssueStatusInfo | None) -> WorkTimestamps:
    """Scan the chosen timeline for the current in-progress window."""
    if info is None:
        return WorkTimestamps()
    started_at: str | None = None
    completed_at: str | None = None
    for event in info.timeline:
        if event.status == "in_progress":
            started_at = event.occurred_at
            completed_at = None
        elif event.status in {"done", "canceled"}:
            if started_at and not completed_at:
                completed_at = event.occurred_at
        elif event.status in {"todo", "no_status"}:
            # Regression to backlog voids in-progress timing.
            started_at = None
            completed_at = None
    return WorkTimestamps(started_at=started_at, completed_at=completed_at)


def status_entry_times(events: Iterable[StatusEvent]) -> dict[str, str | None]:
    """Latest time each status was entered in a timeline."""
    times: dict[str, str | None] = {"todo": None, "in_progress": None, "done": None, "canceled": None}
    for event in events or ():
        if event.status in times:
            times[event.status] = event.occurred_at
    return times


def latest_status_at_or_before(events: Iterable[StatusEvent], when: str) -> str | None:
    """Status of a timeline at ``when`` (inclusive), or None before the first event."""
    cutoff = parse_datetime(when)
    if cutoff is None:
        return None
    current: str | None = None
    for event in events or ():
        occurred = parse_datetime(event.occurred_at)
        if occurred is None or occurred > cutoff:
            break
        current = event.status
    return current
