"""Typed views over raw GitHub JSON payloads.

The sync pipeline stores GraphQL nodes verbatim in ``data`` columns. These
helpers pull the fields the activity feed needs, substituting defaults for
anything missing or malformed instead of raising.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from ghactivity.date_utils import parse_datetime
from ghactivity.services.status_resolver import normalize_project_target

logger = logging.getLogger("ghactivity.activity")

MENTION_RE = re.compile(r"@([A-Za-z0-9_-]+)")
EXCERPT_LIMIT = 140

_ISSUE_TYPE_LABELS = {
    "bug": ("label:issue_type:bug", "Bug"),
    "feature": ("label:issue_type:feature", "Feature"),
    "feature request": ("label:issue_type:feature", "Feature"),
    "enhancement": ("label:issue_type:feature", "Feature"),
    "task": ("label:issue_type:task", "Task"),
    "todo": ("label:issue_type:task", "Task"),
    "chore": ("label:issue_type:task", "Task"),
}


def load_json(value: Any, default: Any = None) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return default
        try:
            return json.loads(token)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed JSON payload (%d chars)", len(token))
            return default
    return default


def safe_json_dict(value: Any) -> dict[str, Any]:
    parsed = load_json(value, {})
    return parsed if isinstance(parsed, dict) else {}


def safe_json_list(value: Any) -> list[Any]:
    parsed = load_json(value, [])
    return parsed if isinstance(parsed, list) else []


def _nodes(payload: dict[str, Any], key: str) -> list[dict[str, Any]]:
    container = payload.get(key)
    if isinstance(container, dict):
        nodes = container.get("nodes")
    elif isinstance(container, list):
        nodes = container
    else:
        nodes = None
    if not isinstance(nodes, list):
        return []
    return [node for node in nodes if isinstance(node, dict)]


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _total_count(payload: dict[str, Any], key: str) -> int:
    container = payload.get(key)
    if isinstance(container, dict):
        count = container.get("totalCount")
        if isinstance(count, int) and count > 0:
            return count
    return 0


def normalize_priority(value: Any) -> str | None:
    text = _text(value)
    if text is None:
        return None
    lowered = text.lower()
    for token in ("p0", "p1", "p2"):
        if lowered.startswith(token):
            return token.upper()
    return text


def normalize_weight(value: Any) -> str | None:
    text = _text(value)
    if text is None:
        return None
    lowered = text.lower()
    for token in ("heavy", "medium", "light"):
        if lowered.startswith(token):
            return token.capitalize()
    return text[:1].upper() + text[1:].lower()


@dataclass(frozen=True)
class ProjectFields:
    priority: str | None = None
    priority_updated_at: str | None = None
    weight: str | None = None
    weight_updated_at: str | None = None
    initiation_options: str | None = None
    initiation_options_updated_at: str | None = None
    start_date: str | None = None
    start_date_updated_at: str | None = None


def _field_value(value: Any) -> tuple[str | None, str | None, str | None]:
    """Return (value, date value, updatedAt) of one project field node."""
    if not isinstance(value, dict):
        return None, None, None
    resolved = _text(value.get("name")) or _text(value.get("title")) or _text(value.get("text"))
    number = value.get("number")
    if resolved is None and isinstance(number, (int, float)) and not isinstance(number, bool):
        resolved = str(number)
    date_value = _text(value.get("date"))
    if resolved is None:
        resolved = date_value
    return resolved, date_value, _text(value.get("updatedAt"))


def _is_newer(candidate: str | None, current: str | None) -> bool:
    if current is None:
        return True
    if candidate is None:
        return False
    left, right = parse_datetime(candidate), parse_datetime(current)
    if left is not None and right is not None:
        return left >= right
    return candidate >= current


def extract_project_fields(payload: dict[str, Any], target_project: str | None) -> ProjectFields:
    """Latest priority/weight/initiation/start date across the target project's items."""
    target = normalize_project_target(target_project)
    if not target:
        return ProjectFields()
    latest: dict[str, tuple[str | None, str | None]] = {}
    for node in _nodes(payload, "projectItems"):
        project = node.get("project")
        title = project.get("title") if isinstance(project, dict) else None
        if normalize_project_target(title) != target:
            continue
        fallback = _text(node.get("updatedAt")) or _text(node.get("createdAt"))
        for key in ("priority", "weight", "initiationOptions", "startDate"):
            value, date_value, updated_at = _field_value(node.get(key))
            if value is None:
                continue
            if key == "startDate" and date_value:
                value = date_value
            stamp = updated_at or fallback
            current = latest.get(key)
            if current is None or (stamp is not None and _is_newer(stamp, current[1])):
                latest[key] = (value, stamp)

    def pick(key: str) -> tuple[str | None, str | None]:
        return latest.get(key, (None, None))

    priority, priority_at = pick("priority")
    weight, weight_at = pick("weight")
    initiation, initiation_at = pick("initiationOptions")
    start, start_at = pick("startDate")
    return ProjectFields(
        priority=normalize_priority(priority),
        priority_updated_at=priority_at,
        weight=normalize_weight(weight),
        weight_updated_at=weight_at,
        initiation_options=initiation,
        initiation_options_updated_at=initiation_at,
        start_date=start,
        start_date_updated_at=start_at,
    )


def apply_project_overrides(fields: ProjectFields, overrides: dict[str, Any] | None) -> ProjectFields:
    """Local overrides win whenever they carry a value."""
    if not overrides:
        return fields
    return ProjectFields(
        priority=normalize_priority(overrides.get("priority_value")) or fields.priority,
        priority_updated_at=overrides.get("priority_updated_at") if _text(overrides.get("priority_value")) else fields.priority_updated_at,
        weight=normalize_weight(overrides.get("weight_value")) or fields.weight,
        weight_updated_at=overrides.get("weight_updated_at") if _text(overrides.get("weight_value")) else fields.weight_updated_at,
        initiation_options=_text(overrides.get("initiation_value")) or fields.initiation_options,
        initiation_options_updated_at=overrides.get("initiation_updated_at") if _text(overrides.get("initiation_value")) else fields.initiation_options_updated_at,
        start_date=_text(overrides.get("start_date_value")) or fields.start_date,
        start_date_updated_at=overrides.get("start_date_updated_at") if _text(overrides.get("start_date_value")) else fields.start_date_updated_at,
    )


@dataclass(frozen=True)
class ItemPayload:
    """Fields of an issue, discussion or pull request node."""

    typename: str = ""
    url: str | None = None
    body: str = ""
    assignee_ids: tuple[str, ...] = ()
    label_names: tuple[str, ...] = ()
    issue_type_id: str | None = None
    issue_type_name: str | None = None
    milestone: dict[str, Any] = field(default_factory=dict)
    tracked_issues_count: int = 0
    tracked_in_issues_count: int = 0
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_discussion(self) -> bool:
        if self.typename.lower() == "discussion":
            return True
        return bool(self.url and "/discussions/" in self.url)


def parse_item_payload(value: Any, url: str | None = None) -> ItemPayload:
    payload = safe_json_dict(value)
    labels = tuple(
        name for name in (_text(node.get("name")) for node in _nodes(payload, "labels")) if name
    )
    issue_type = payload.get("issueType") if isinstance(payload.get("issueType"), dict) else {}
    type_id = _text(issue_type.get("id"))
    type_name = _text(issue_type.get("name"))
    if type_id is None:
        type_id, type_name = issue_type_from_labels(labels)
    milestone_raw = payload.get("milestone") if isinstance(payload.get("milestone"), dict) else {}
    milestone = {
        "id": _text(milestone_raw.get("id")),
        "title": _text(milestone_raw.get("title")),
        "state": _text(milestone_raw.get("state")),
        "dueOn": _text(milestone_raw.get("dueOn")),
        "url": _text(milestone_raw.get("url")),
    } if milestone_raw else {}
    body = payload.get("bodyText") if isinstance(payload.get("bodyText"), str) else payload.get("body")
    return ItemPayload(
        typename=str(payload.get("__typename") or ""),
        url=url or _text(payload.get("url")),
        body=body if isinstance(body, str) else "",
        assignee_ids=tuple(
            node_id for node_id in (_text(node.get("id")) for node in _nodes(payload, "assignees")) if node_id
        ),
        label_names=labels,
        issue_type_id=type_id,
        issue_type_name=type_name,
        milestone=milestone,
        tracked_issues_count=_total_count(payload, "trackedIssues"),
        tracked_in_issues_count=_total_count(payload, "trackedInIssues"),
        raw=payload,
    )


def issue_type_from_labels(labels: Iterable[str]) -> tuple[str | None, str | None]:
    for label in labels:
        match = _ISSUE_TYPE_LABELS.get(label.strip().lower())
        if match:
            return match
    return None, None


def label_key(repository_name_with_owner: str | None, label: str) -> str:
    return f"{repository_name_with_owner or ''}:{label}"


def comment_body(value: Any) -> str:
    payload = safe_json_dict(value)
    body = payload.get("body")
    if not isinstance(body, str):
        body = payload.get("bodyText")
    return body if isinstance(body, str) else ""


def comment_url(value: Any) -> str | None:
    return _text(safe_json_dict(value).get("url"))


def extract_mentions(text: str | None) -> list[str]:
    """Lowercased, de-duplicated ``@login`` handles in order of appearance."""
    if not text:
        return []
    seen: list[str] = []
    for match in MENTION_RE.finditer(text):
        login = match.group(1).lower()
        if login not in seen:
            seen.append(login)
    return seen


def comment_excerpt(body: str | None, limit: int = EXCERPT_LIMIT) -> str:
    normalized = " ".join((body or "").split())
    if len(normalized) <= limit:
        return normalized
    return normalized[: limit - 3] + "..."
