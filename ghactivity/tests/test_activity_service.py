import json
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

import aiosqlite

from ghactivity import config
from ghactivity.db.sqlite_migrations import run_migrations
from ghactivity.errors import (
    FilterFingerprintMismatchError,
    InvalidIdError,
    InvalidPayloadError,
    ItemNotFoundError,
    ProjectFieldConflictError,
    StatusLockedError,
)
from ghactivity.models import ActivityPagination
from ghactivity.services import activity_service
from ghactivity.services.activity_service import business_metrics
from ghactivity.services.org_context import OrgContext

NOW = datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc)

TRACKED_PAYLOAD = {
    "projectItems": {"nodes": [{
        "project": {"title": "To-Do"},
        "priority": {"name": "P1 - High", "updatedAt": "2024-05-01T00:00:00Z"},
        "weight": {"name": "light"},
    }]},
}
LOCKED_PAYLOAD = {
    "projectItems": {"nodes": [{"project": {"title": "To-Do"}}]},
    "projectStatusHistory": [
        {"projectTitle": "To-Do", "status": "In Progress", "occurredAt": "2024-05-20T00:00:00Z"},
    ],
}


class ActivityServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        automation = patch.object(config, "AUTOMATION_ON_READ", False)
        automation.start()
        self.addCleanup(automation.stop)

        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await self.db.execute("UPDATE sync_config SET todo_project_name = 'To-Do' WHERE id = 'default'")
        await self.db.execute(
            "INSERT INTO repositories (id, name, name_with_owner) VALUES ('R1', 'app', 'acme/app')"
        )
        await self.db.executemany(
            "INSERT INTO users (id, login, name) VALUES (?, ?, ?)",
            [("U1", "alice", "Alice"), ("U2", "bob", "Bob")],
        )
        await self.db.executemany(
            """INSERT INTO issues (id, number, title, state, url, repository_id, author_id, data,
                                   github_created_at, github_updated_at)
               VALUES (?, ?, ?, 'OPEN', ?, 'R1', 'U1', ?, '2024-05-20T12:00:00Z', ?)""",
            [
                ("I1", 1, "Tracked issue", "https://github.com/acme/app/issues/1",
                 json.dumps(TRACKED_PAYLOAD), "2024-05-30T12:00:00Z"),
                ("I2", 2, "Board owned", "https://github.com/acme/app/issues/2",
                 json.dumps(LOCKED_PAYLOAD), "2024-05-27T12:00:00Z"),
                ("I3", 3, "Plain issue", "https://github.com/acme/app/issues/3",
                 "{}", "2024-05-28T12:00:00Z"),
            ],
        )
        await self.db.execute(
            """INSERT INTO pull_requests (id, number, title, state, url, repository_id, author_id,
                                          github_created_at, github_updated_at)
               VALUES ('P1', 4, 'Fix plain issue', 'OPEN', 'https://github.com/acme/app/pull/4', 'R1', 'U1',
                       '2024-05-27T12:00:00Z', '2024-05-29T12:00:00Z')"""
        )
        await self.db.execute("INSERT INTO pull_request_issues (pull_request_id, issue_id) VALUES ('P1', 'I3')")
        await self.db.execute(
            "INSERT INTO comments (id, issue_id, author_id, github_created_at, data) VALUES (?, ?, ?, ?, ?)",
            ("C1", "I1", "U2", "2024-05-30T12:00:00Z", json.dumps({"body": "Looks good", "url": "https://c/1"})),
        )
        await self.db.execute(
            "INSERT INTO sync_runs (id, status, started_at, completed_at) VALUES ('RUN-1', 'success', ?, ?)",
            ("2024-05-31T00:00:00Z", "2024-05-31T00:10:00Z"),
        )
        await self.db.commit()

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _list(self, filters=None, **pagination):
        return await activity_service.list_activity_items(
            self.db, filters, ActivityPagination(**pagination), now=NOW
        )

    # ── Listing ─────────────────────────────────────────────────────

    async def test_list_returns_page_and_prefetch_window(self) -> None:
        result = await self._list(page=1, perPage=2, prefetchPages=2)

        self.assertEqual([item.id for item in result.items], ["I1", "P1"])
        self.assertTrue(result.pageInfo.hasMore)
        self.assertIsNone(result.pageInfo.totalCount)
        self.assertEqual([page.page for page in result.prefetch.pages], [1, 2])
        self.assertEqual([item.id for item in result.prefetch.pages[1].items], ["I3", "I2"])
        self.assertEqual(result.prefetch.bufferedPages, 2)
        self.assertFalse(result.prefetch.hasMore)
        self.assertEqual(result.prefetch.expiresAt, "2024-05-31T12:05:00Z")
        self.assertEqual(result.cacheMetadata.syncRunId, "RUN-1")
        self.assertEqual(result.cacheMetadata.timezone, "UTC")

    async def test_items_are_decorated(self) -> None:
        result = await self._list(perPage=10)
        items = {item.id: item for item in result.items}

        self.assertEqual(items["I1"].author.login, "alice")
        self.assertEqual([user.login for user in items["I1"].commenters], ["bob"])
        self.assertEqual(items["I1"].issueProjectStatus, "no_status")
        self.assertEqual(items["I1"].issuePriority, "P1")
        self.assertTrue(items["I2"].issueProjectStatusLocked)
        self.assertEqual(items["I2"].issueTodoProjectStatus, "in_progress")
        self.assertEqual([link.id for link in items["I3"].linkedPullRequests], ["P1"])
        self.assertEqual([link.id for link in items["P1"].linkedIssues], ["I3"])
        self.assertIsNone(items["P1"].issueProjectStatus)
        self.assertEqual(items["P1"].repository.nameWithOwner, "acme/app")

    async def test_jump_to_date_moves_to_the_containing_page(self) -> None:
        result = await self._list({"jumpToDate": "2024-05-28T12:00:00Z"}, page=1, perPage=2)
        self.assertEqual(result.pageInfo.page, 2)
        self.assertEqual([item.id for item in result.items], ["I3", "I2"])

    async def test_filters_narrow_the_feed(self) -> None:
        result = await self._list({"types": ["pull_request"]})
        self.assertEqual([item.id for item in result.items], ["P1"])
        empty = await self._list({"attention": ["pr_inactive"]})
        self.assertEqual(empty.items, [])
        self.assertEqual(empty.prefetch.bufferedPages, 0)

    # ── Summary ─────────────────────────────────────────────────────

    async def test_summary_counts_and_jump_index(self) -> None:
        listed = await self._list(perPage=2)
        summary = await activity_service.get_summary(self.db, listed.prefetch.token, None, now=NOW)

        self.assertEqual(summary.totalCount, 4)
        self.assertEqual(summary.totalPages, 2)
        self.assertEqual(summary.perPage, 2)
        self.assertEqual([(entry.page, entry.itemId) for entry in summary.jumpIndex], [(1, "I1"), (2, "I3")])

    async def test_summary_rejects_a_token_for_other_filters(self) -> None:
        listed = await self._list(perPage=2)
        with self.assertRaises(FilterFingerprintMismatchError):
            await activity_service.get_summary(self.db, listed.prefetch.token, {"types": ["issue"]}, now=NOW)

    # ── Detail ──────────────────────────────────────────────────────

    async def test_detail_includes_comments_and_project_fields(self) -> None:
        detail = await activity_service.get_item_detail(self.db, "I1", now=NOW)

        self.assertEqual(detail.item.id, "I1")
        self.assertEqual([(c.id, c.author.login, c.body) for c in detail.comments], [("C1", "bob", "Looks good")])
        self.assertEqual(detail.projectFields.priority, "P1")
        self.assertEqual(detail.projectFields.priorityUpdatedAt, "2024-05-01T00:00:00Z")
        self.assertEqual(detail.projectFields.weight, "Light")

    async def test_detail_errors(self) -> None:
        with self.assertRaises(InvalidIdError):
            await activity_service.get_item_detail(self.db, "  ")
        with self.assertRaises(ItemNotFoundError):
            await activity_service.get_item_detail(self.db, "missing")

    # ── Status writes ───────────────────────────────────────────────

    async def test_manual_status_and_clear(self) -> None:
        detail = await activity_service.set_issue_status(self.db, "I1", "in_progress")
        self.assertEqual(detail.item.issueProjectStatus, "in_progress")
        self.assertEqual(detail.item.issueProjectStatusSource, "activity")
        self.assertIsNotNone(detail.activityStatusTimes.get("in_progress"))

        cleared = await activity_service.clear_issue_status(self.db, "I1")
        self.assertEqual(cleared.item.issueProjectStatus, "no_status")
        self.assertIsNone(cleared.item.issueActivityStatus)

    async def test_status_writes_are_validated(self) -> None:
        with self.assertRaises(InvalidPayloadError):
            await activity_service.set_issue_status(self.db, "I1", "blocked")
        with self.assertRaises(ItemNotFoundError):
            await activity_service.set_issue_status(self.db, "P1", "done")
        with self.assertRaises(StatusLockedError) as caught:
            await activity_service.set_issue_status(self.db, "I2", "done")
        self.assertEqual(caught.exception.todo_status, "in_progress")

    # ── Project field writes ────────────────────────────────────────

    async def test_project_field_update_with_expected_value(self) -> None:
        detail = await activity_service.update_project_fields(
            self.db, "I1", {"priority": "p0", "expected": {"priority": "P1"}}
        )
        self.assertEqual(detail.projectFields.priority, "P0")
        self.assertEqual(detail.item.issuePriority, "P0")
        self.assertIsNotNone(detail.projectFields.priorityUpdatedAt)

        with self.assertRaises(ProjectFieldConflictError):
            await activity_service.update_project_fields(
                self.db, "I1", {"priority": "P2", "expected": {"priority": "P1"}}
            )

        cleared = await activity_service.clear_project_fields(self.db, "I1")
        self.assertEqual(cleared.projectFields.priority, "P1")

    async def test_project_field_update_validation(self) -> None:
        with self.assertRaises(InvalidPayloadError):
            await activity_service.update_project_fields(self.db, "I1", {})
        with self.assertRaises(InvalidPayloadError):
            await activity_service.update_project_fields(self.db, "I1", {"priority": "P9"})
        with self.assertRaises(InvalidPayloadError):
            await activity_service.update_project_fields(self.db, "I1", {"startDate": "next week"})

    async def test_locked_issue_only_accepts_weight(self) -> None:
        with self.assertRaises(StatusLockedError):
            await activity_service.update_project_fields(self.db, "I2", {"priority": "P0"})
        detail = await activity_service.update_project_fields(self.db, "I2", {"weight": "heavy"})
        self.assertEqual(detail.projectFields.weight, "Heavy")
        with self.assertRaises(StatusLockedError):
            await activity_service.clear_project_fields(self.db, "I2")


class BusinessMetricsTests(unittest.TestCase):
    def test_closed_items_stop_counting_at_close(self) -> None:
        row = {
            "item_type": "pull_request",
            "status": "merged",
            "created_at": "2024-05-20T12:00:00Z",
            "updated_at": "2024-05-24T12:00:00Z",
            "merged_at": "2024-05-24T12:00:00Z",
        }
        metrics = business_metrics(row, NOW, OrgContext())
        self.assertEqual(metrics["businessDaysOpen"], 4)
        self.assertEqual(metrics["businessDaysIdle"], 5)
        self.assertIsNone(metrics["businessDaysSinceInProgress"])

    def test_in_progress_metrics_for_issues(self) -> None:
        row = {
            "item_type": "issue",
            "status": "open",
            "created_at": "2024-05-01T12:00:00Z",
            "issue_work_started_at": "2024-05-27T12:00:00Z",
            "issue_work_completed_at": "2024-05-29T12:00:00Z",
            "issue_status_source": "activity",
        }
        metrics = business_metrics(row, NOW, OrgContext())
        self.assertEqual(metrics["businessDaysSinceInProgress"], 4)
        self.assertEqual(metrics["businessDaysInProgressOpen"], 2)


if __name__ == "__main__":
    unittest.main()
