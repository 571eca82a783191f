"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("ghactivity.db")

SCHEMA_VERSION = 3

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- ── 1. Upstream: organisation sync state ───────────────────────────
CREATE TABLE IF NOT EXISTS sync_config (
    id                          TEXT PRIMARY KEY DEFAULT 'default',
    org_name                    TEXT,
    timezone                    TEXT DEFAULT 'UTC',
    excluded_repository_ids     TEXT[] DEFAULT '{}',
    excluded_user_ids           TEXT[] DEFAULT '{}',
    org_holiday_calendar_codes  TEXT[] DEFAULT '{}',
    todo_project_name           TEXT,
    last_sync_completed_at      TEXT,
    last_successful_sync_at     TEXT
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id            TEXT PRIMARY KEY,
    run_type      TEXT NOT NULL DEFAULT 'automatic',
    status        TEXT NOT NULL DEFAULT 'running',
    started_at    TEXT NOT NULL,
    completed_at  TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_runs_completed ON sync_runs(status, completed_at DESC);

CREATE TABLE IF NOT EXISTS holiday_calendars (
    code           TEXT PRIMARY KEY,
    label          TEXT NOT NULL,
    country_label  TEXT,
    region_label   TEXT,
    sort_order     INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS calendar_holidays (
    id             BIGSERIAL PRIMARY KEY,
    calendar_code  TEXT NOT NULL,
    holiday_date   TEXT NOT NULL,
    weekday        TEXT,
    name           TEXT NOT NULL,
    note           TEXT,
    UNIQUE(calendar_code, holiday_date, name)
);

-- ── 2. Upstream: GitHub entities ───────────────────────────────────
CREATE TABLE IF NOT EXISTS repositories (
    id               TEXT PRIMARY KEY,
    name             TEXT NOT NULL,
    name_with_owner  TEXT NOT NULL,
    data             JSONB DEFAULT '{}'::jsonb
);

CREATE TABLE IF NOT EXISTS users (
    id          TEXT PRIMARY KEY,
    login       TEXT,
    name        TEXT,
    avatar_url  TEXT,
    data        JSONB DEFAULT '{}'::jsonb
);

CREATE TABLE IF NOT EXISTS repository_maintainers (
    repository_id  TEXT NOT NULL,
    user_id        TEXT NOT NULL,
    PRIMARY KEY (repository_id, user_id)
);

CREATE TABLE IF NOT EXISTS issues (
    id                 TEXT PRIMARY KEY,
    number             INTEGER NOT NULL,
    title              TEXT,
    state              TEXT,
    url                TEXT,
    repository_id      TEXT,
    author_id          TEXT,
    data               JSONB DEFAULT '{}'::jsonb,
    github_created_at  TEXT,
    github_updated_at  TEXT,
    github_closed_at   TEXT
);
CREATE INDEX IF NOT EXISTS idx_issues_repo ON issues(repository_id);

CREATE TABLE IF NOT EXISTS pull_requests (
    id                 TEXT PRIMARY KEY,
    number             INTEGER NOT NULL,
    title              TEXT,
    state              TEXT,
    url                TEXT,
    merged             BOOLEAN DEFAULT FALSE,
    repository_id      TEXT,
    author_id          TEXT,
    data               JSONB DEFAULT '{}'::jsonb,
    github_created_at  TEXT,
    github_updated_at  TEXT,
    github_closed_at   TEXT,
    github_merged_at   TEXT
);
CREATE INDEX IF NOT EXISTS idx_pull_requests_repo ON pull_requests(repository_id);

CREATE TABLE IF NOT EXISTS reviews (
    id                   TEXT PRIMARY KEY,
    pull_request_id      TEXT NOT NULL,
    author_id            TEXT,
    state                TEXT,
    github_submitted_at  TEXT,
    data                 JSONB DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS idx_reviews_pr ON reviews(pull_request_id, author_id);

CREATE TABLE IF NOT EXISTS review_requests (
    id               TEXT PRIMARY KEY,
    pull_request_id  TEXT NOT NULL,
    reviewer_id      TEXT,
    requested_at     TEXT,
    removed_at       TEXT
);
CREATE INDEX IF NOT EXISTS idx_review_requests_pr ON review_requests(pull_request_id);

CREATE TABLE IF NOT EXISTS comments (
    id                 TEXT PRIMARY KEY,
    issue_id           TEXT,
    pull_request_id    TEXT,
    review_id          TEXT,
    author_id          TEXT,
    github_created_at  TEXT,
    github_updated_at  TEXT,
    data               JSONB DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS idx_comments_issue ON comments(issue_id);
CREATE INDEX IF NOT EXISTS idx_comments_pr ON comments(pull_request_id);

CREATE TABLE IF NOT EXISTS reactions (
    id                 TEXT PRIMARY KEY,
    subject_type       TEXT,
    subject_id         TEXT,
    user_id            TEXT,
    content            TEXT,
    github_created_at  TEXT
);
CREATE INDEX IF NOT EXISTS idx_reactions_subject ON reactions(subject_id, user_id);

CREATE TABLE IF NOT EXISTS pull_request_issues (
    pull_request_id   TEXT NOT NULL,
    issue_id          TEXT NOT NULL,
    issue_number      INTEGER,
    issue_title       TEXT,
    issue_state       TEXT,
    issue_url         TEXT,
    issue_repository  TEXT,
    updated_at        TEXT,
    PRIMARY KEY (pull_request_id, issue_id)
);
CREATE INDEX IF NOT EXISTS idx_pull_request_issues_issue ON pull_request_issues(issue_id);

-- ── 3. Derived: materialized activity snapshot ─────────────────────
CREATE TABLE IF NOT EXISTS activity_items (
    id                              TEXT PRIMARY KEY,
    item_type                       TEXT NOT NULL,
    number                          INTEGER,
    title                           TEXT,
    url                             TEXT,
    state                           TEXT,
    status                          TEXT NOT NULL DEFAULT 'open',
    repository_id                   TEXT,
    repository_name                 TEXT,
    repository_name_with_owner      TEXT,
    author_id                       TEXT,
    assignee_ids                    TEXT[] DEFAULT '{}',
    reviewer_ids                    TEXT[] DEFAULT '{}',
    mentioned_ids                   TEXT[] DEFAULT '{}',
    commenter_ids                   TEXT[] DEFAULT '{}',
    reactor_ids                     TEXT[] DEFAULT '{}',
    maintainer_ids                  TEXT[] DEFAULT '{}',
    label_keys                      TEXT[] DEFAULT '{}',
    label_names                     TEXT[] DEFAULT '{}',
    issue_type_id                   TEXT,
    issue_type_name                 TEXT,
    milestone_id                    TEXT,
    milestone_title                 TEXT,
    milestone_state                 TEXT,
    milestone_due_on                TEXT,
    milestone_url                   TEXT,
    issue_priority                  TEXT,
    issue_weight                    TEXT,
    issue_initiation_options        TEXT,
    issue_start_date                TEXT,
    tracked_issues_count            INTEGER DEFAULT 0,
    tracked_in_issues_count         INTEGER DEFAULT 0,
    issue_todo_status               TEXT,
    issue_todo_status_at            TEXT,
    issue_activity_status           TEXT,
    issue_activity_status_at        TEXT,
    issue_display_status            TEXT,
    issue_status_source             TEXT,
    issue_status_locked             BOOLEAN DEFAULT FALSE,
    issue_work_started_at           TEXT,
    issue_work_completed_at         TEXT,
    body_text                       TEXT,
    created_at                      TEXT,
    updated_at                      TEXT,
    closed_at                       TEXT,
    merged_at                       TEXT,
    snapshot_at                     TEXT
);
CREATE INDEX IF NOT EXISTS idx_activity_items_order ON activity_items(updated_at DESC NULLS LAST, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_activity_items_repo ON activity_items(repository_id, item_type);

-- ── 4. Derived: issue status history + project overrides ───────────
CREATE TABLE IF NOT EXISTS activity_issue_status_history (
    id           BIGSERIAL PRIMARY KEY,
    issue_id     TEXT NOT NULL,
    status       TEXT NOT NULL,
    occurred_at  TEXT NOT NULL,
    source       TEXT NOT NULL DEFAULT 'activity',
    inserted_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_status_history_issue ON activity_issue_status_history(issue_id, occurred_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_status_history_unique
    ON activity_issue_status_history(issue_id, status, source, occurred_at);

CREATE TABLE IF NOT EXISTS activity_issue_project_overrides (
    issue_id               TEXT PRIMARY KEY,
    priority_value         TEXT,
    priority_updated_at    TEXT,
    weight_value           TEXT,
    weight_updated_at      TEXT,
    initiation_value       TEXT,
    initiation_updated_at  TEXT,
    start_date_value       TEXT,
    start_date_updated_at  TEXT,
    updated_at             TEXT NOT NULL
);

-- ── 5. Derived: cache state + lookup caches ────────────────────────
CREATE TABLE IF NOT EXISTS activity_cache_state (
    cache_key     TEXT PRIMARY KEY,
    generated_at  TEXT,
    sync_run_id   TEXT,
    item_count    INTEGER DEFAULT 0,
    metadata      JSONB DEFAULT '{}'::jsonb,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_filter_options_cache (
    cache_key     TEXT PRIMARY KEY,
    payload       JSONB NOT NULL,
    generated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_issue_links_cache (
    issue_id                         TEXT NOT NULL,
    pull_request_id                  TEXT NOT NULL,
    pr_number                        INTEGER,
    pr_title                         TEXT,
    pr_state                         TEXT,
    pr_status                        TEXT,
    pr_url                           TEXT,
    pr_repository_id                 TEXT,
    pr_repository_name               TEXT,
    pr_repository_name_with_owner    TEXT,
    pr_author_id                     TEXT,
    pr_merged_at                     TEXT,
    pr_closed_at                     TEXT,
    pr_updated_at                    TEXT,
    PRIMARY KEY (issue_id, pull_request_id)
);

CREATE TABLE IF NOT EXISTS activity_pull_request_links_cache (
    pull_request_id   TEXT NOT NULL,
    issue_id          TEXT NOT NULL,
    issue_number      INTEGER,
    issue_title       TEXT,
    issue_state       TEXT,
    issue_url         TEXT,
    issue_repository  TEXT,
    PRIMARY KEY (pull_request_id, issue_id)
);

-- ── 6. Derived: unanswered mention classifications ─────────────────
CREATE TABLE IF NOT EXISTS mention_classifications (
    comment_id                   TEXT NOT NULL,
    mentioned_user_id            TEXT NOT NULL,
    comment_body_hash            TEXT,
    prompt_version               TEXT,
    requires_response            BOOLEAN,
    model                        TEXT,
    raw_response                 TEXT,
    last_evaluated_at            TEXT,
    manual_requires_response     BOOLEAN,
    manual_requires_response_at  TEXT,
    created_at                   TEXT NOT NULL,
    updated_at                   TEXT NOT NULL,
    PRIMARY KEY (comment_id, mentioned_user_id)
);

INSERT INTO sync_config (id, timezone) VALUES ('default', 'UTC') ON CONFLICT (id) DO NOTHING;
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        try:
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        except asyncpg.UndefinedTableError:
            current_version = 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("ALTER TABLE sync_config ADD COLUMN IF NOT EXISTS todo_project_name TEXT")
            await conn.execute("ALTER TABLE activity_items ADD COLUMN IF NOT EXISTS maintainer_ids TEXT[] DEFAULT '{}'")
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Migrations complete (version {SCHEMA_VERSION})")
