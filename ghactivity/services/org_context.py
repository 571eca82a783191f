"""Organisation-wide settings needed by every read path."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any

from ghactivity.business_days import EMPTY_HOLIDAY_SET, load_holiday_set, resolve_timezone
from ghactivity.db.factory import get_sync_config_repository


@dataclass(frozen=True)
class OrgContext:
    timezone_name: str = "UTC"
    tz: tzinfo | None = None
    holidays: frozenset[str] = EMPTY_HOLIDAY_SET
    excluded_repository_ids: tuple[str, ...] = ()
    excluded_user_ids: tuple[str, ...] = ()
    todo_project_name: str | None = None
    last_sync_completed_at: str | None = None
    last_successful_sync_at: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


async def load_org_context(db: Any) -> OrgContext:
    sync_config = await get_sync_config_repository(db).get_config()
    timezone_name = sync_config.get("timezone") or "UTC"
    return OrgContext(
        timezone_name=timezone_name,
        tz=resolve_timezone(timezone_name),
        holidays=await load_holiday_set(db, sync_config.get("holiday_calendar_codes") or []),
        excluded_repository_ids=tuple(sync_config.get("excluded_repository_ids") or ()),
        excluded_user_ids=tuple(sync_config.get("excluded_user_ids") or ()),
        todo_project_name=sync_config.get("todo_project_name"),
        last_sync_completed_at=sync_config.get("last_sync_completed_at"),
        last_successful_sync_at=sync_config.get("last_successful_sync_at"),
        raw=sync_config,
    )
