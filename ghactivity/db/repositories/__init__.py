"""Repository package for database access."""

from .activity_caches import SqliteActivityCacheRepository
from .activity_items import SqliteActivityItemRepository
from .attention import SqliteAttentionRepository
from .cache_state import SqliteCacheStateRepository
from .issue_status import SqliteIssueStatusRepository, SqliteProjectOverrideRepository
from .mention_classifications import SqliteMentionClassificationRepository
from .sync_config import SqliteHolidayRepository, SqliteSyncConfigRepository

__all__ = [
    "SqliteActivityCacheRepository",
    "SqliteActivityItemRepository",
    "SqliteAttentionRepository",
    "SqliteCacheStateRepository",
    "SqliteIssueStatusRepository",
    "SqliteProjectOverrideRepository",
    "SqliteMentionClassificationRepository",
    "SqliteHolidayRepository",
    "SqliteSyncConfigRepository",
]
