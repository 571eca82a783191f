"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from ghactivity.db.repositories.activity_caches import SqliteActivityCacheRepository
from ghactivity.db.repositories.activity_items import SqliteActivityItemRepository
from ghactivity.db.repositories.attention import SqliteAttentionRepository
from ghactivity.db.repositories.cache_state import SqliteCacheStateRepository
from ghactivity.db.repositories.issue_status import (
    SqliteIssueStatusRepository,
    SqliteProjectOverrideRepository,
)
from ghactivity.db.repositories.mention_classifications import SqliteMentionClassificationRepository
from ghactivity.db.repositories.sync_config import SqliteHolidayRepository, SqliteSyncConfigRepository


def get_sync_config_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSyncConfigRepository(db)
    from ghactivity.db.repositories.postgres.sync_config import PostgresSyncConfigRepository
    return PostgresSyncConfigRepository(db)


def get_holiday_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteHolidayRepository(db)
    from ghactivity.db.repositories.postgres.sync_config import PostgresHolidayRepository
    return PostgresHolidayRepository(db)


def get_cache_state_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteCacheStateRepository(db)
    from ghactivity.db.repositories.postgres.cache_state import PostgresCacheStateRepository
    return PostgresCacheStateRepository(db)


def get_issue_status_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteIssueStatusRepository(db)
    from ghactivity.db.repositories.postgres.issue_status import PostgresIssueStatusRepository
    return PostgresIssueStatusRepository(db)


def get_project_override_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteProjectOverrideRepository(db)
    from ghactivity.db.repositories.postgres.issue_status import PostgresProjectOverrideRepository
    return PostgresProjectOverrideRepository(db)


def get_activity_item_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteActivityItemRepository(db)
    from ghactivity.db.repositories.postgres.activity_items import PostgresActivityItemRepository
    return PostgresActivityItemRepository(db)


def get_attention_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteAttentionRepository(db)
    from ghactivity.db.repositories.postgres.attention import PostgresAttentionRepository
    return PostgresAttentionRepository(db)


def get_activity_cache_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteActivityCacheRepository(db)
    from ghactivity.db.repositories.postgres.activity_caches import PostgresActivityCacheRepository
    return PostgresActivityCacheRepository(db)


def get_mention_classification_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteMentionClassificationRepository(db)
    from ghactivity.db.repositories.postgres.mention_classifications import (
        PostgresMentionClassificationRepository,
    )
    return PostgresMentionClassificationRepository(db)
