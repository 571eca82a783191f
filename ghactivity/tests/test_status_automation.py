import json
import unittest
from unittest.mock import AsyncMock, patch

import aiosqlite

from ghactivity.db.repositories.cache_state import SqliteCacheStateRepository
from ghactivity.db.repositories.issue_status import SqliteIssueStatusRepository
from ghactivity.db.sqlite_migrations import run_migrations
from ghactivity.services import status_automation
from ghactivity.services.status_automation import (
    AUTOMATION_CACHE_KEY,
    ensure_issue_status_automation,
    get_automation_summary,
)

LOCKED_PAYLOAD = {
    "projectItems": {"nodes": [{"project": {"title": "To-Do"}}]},
    "projectStatusHistory": [
        {"projectTitle": "To-Do", "status": "In Progress", "occurredAt": "2024-04-01T00:00:00Z"},
    ],
}


class StatusAutomationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await self.db.execute(
            "UPDATE sync_config SET todo_project_name = ?, last_successful_sync_at = ? WHERE id = 'default'",
            ("To-Do", "2024-05-01T00:00:00Z"),
        )
        await self.db.executemany(
            "INSERT INTO issues (id, number, title, state, repository_id, data, github_created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                ("I1", 1, "Merged work", "CLOSED", "R1", "{}", "2024-03-01T00:00:00Z"),
                ("I2", 2, "Abandoned work", "OPEN", "R1", "{}", "2024-03-01T00:00:00Z"),
                ("I3", 3, "Board owned", "OPEN", "R1", json.dumps(LOCKED_PAYLOAD), "2024-03-01T00:00:00Z"),
            ],
        )
        await self.db.executemany(
            """INSERT INTO pull_requests (id, number, state, merged, repository_id, github_created_at,
                                          github_closed_at, github_merged_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                ("P1", 10, "MERGED", 1, "R1", "2024-04-02T10:00:00Z", "2024-04-05T10:00:00Z", "2024-04-05T10:00:00Z"),
                ("P2", 11, "CLOSED", 0, "R1", "2024-04-03T10:00:00Z", "2024-04-06T10:00:00Z", None),
                ("P3", 12, "MERGED", 1, "R1", "2024-04-04T10:00:00Z", "2024-04-08T10:00:00Z", "2024-04-08T10:00:00Z"),
            ],
        )
        await self.db.executemany(
            "INSERT INTO pull_request_issues (pull_request_id, issue_id) VALUES (?, ?)",
            [("P1", "I1"), ("P2", "I2"), ("P3", "I3")],
        )
        await self.db.commit()
        self.events = SqliteIssueStatusRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _statuses(self, issue_id: str) -> list[tuple[str, str]]:
        events = (await self.events.list_events([issue_id])).get(issue_id, [])
        return [(event["status"], event["occurred_at"]) for event in events]

    async def test_merged_pr_completes_and_unmerged_pr_only_starts(self) -> None:
        result = await ensure_issue_status_automation(self.db, trigger="test", force=True)

        self.assertTrue(result.processed)
        self.assertEqual(result.status, "success")
        self.assertEqual(result.inserted_in_progress, 2)
        self.assertEqual(result.inserted_done, 1)
        self.assertEqual(
            await self._statuses("I1"),
            [("in_progress", "2024-04-02T10:00:00Z"), ("done", "2024-04-05T10:00:00Z")],
        )
        self.assertEqual(await self._statuses("I2"), [("in_progress", "2024-04-03T10:00:00Z")])
        # Issues locked by the board are left alone.
        self.assertEqual(await self._statuses("I3"), [])

    async def test_forced_rerun_inserts_nothing_new(self) -> None:
        await ensure_issue_status_automation(self.db, force=True)
        second = await ensure_issue_status_automation(self.db, force=True)

        self.assertTrue(second.processed)
        self.assertEqual(second.inserted_in_progress, 0)
        self.assertEqual(second.inserted_done, 0)
        self.assertEqual(len(await self._statuses("I1")), 2)

    async def test_unchanged_watermark_skips(self) -> None:
        await ensure_issue_status_automation(self.db, force=True)
        skipped = await ensure_issue_status_automation(self.db)

        self.assertFalse(skipped.processed)
        self.assertEqual(skipped.to_dict()["insertedInProgress"], 0)

        await self.db.execute(
            "UPDATE sync_config SET last_successful_sync_at = ? WHERE id = 'default'", ("2024-05-02T00:00:00Z",)
        )
        await self.db.commit()
        rerun = await ensure_issue_status_automation(self.db, trigger="sync")
        self.assertTrue(rerun.processed)
        self.assertEqual(rerun.inserted_in_progress + rerun.inserted_done, 0)

    async def test_success_is_recorded_in_cache_state(self) -> None:
        await self.db.execute(
            "INSERT INTO sync_runs (id, status, started_at, completed_at) VALUES (?, ?, ?, ?)",
            ("RUN-1", "success", "2024-04-30T23:00:00Z", "2024-05-01T00:00:00Z"),
        )
        await self.db.commit()
        result = await ensure_issue_status_automation(self.db, trigger="schedule")

        state = await SqliteCacheStateRepository(self.db).get_state(AUTOMATION_CACHE_KEY)
        self.assertEqual(state["sync_run_id"], "RUN-1")
        self.assertEqual(state["metadata"]["status"], "success")
        self.assertEqual(state["metadata"]["runId"], result.run_id)
        self.assertEqual(state["metadata"]["trigger"], "schedule")
        self.assertEqual(state["metadata"]["lastSuccessfulSyncAt"], "2024-05-01T00:00:00Z")
        self.assertEqual(state["metadata"]["insertedDone"], 1)

        summary = await get_automation_summary(self.db)
        self.assertFalse(summary["pending"])
        self.assertEqual(summary["insertedInProgress"], 2)

    async def test_failure_keeps_watermark_and_records_error(self) -> None:
        await ensure_issue_status_automation(self.db, force=True)
        await self.db.execute(
            "UPDATE sync_config SET last_successful_sync_at = ? WHERE id = 'default'", ("2024-05-02T00:00:00Z",)
        )
        await self.db.commit()

        with patch.object(status_automation, "_apply_automation", AsyncMock(side_effect=RuntimeError("boom"))):
            with self.assertRaises(RuntimeError):
                await ensure_issue_status_automation(self.db, trigger="sync")

        state = await SqliteCacheStateRepository(self.db).get_state(AUTOMATION_CACHE_KEY)
        self.assertEqual(state["metadata"]["status"], "failed")
        self.assertEqual(state["metadata"]["error"], "boom")
        self.assertEqual(state["metadata"]["lastSuccessfulSyncAt"], "2024-05-01T00:00:00Z")

        summary = await get_automation_summary(self.db)
        self.assertTrue(summary["pending"])

        retry = await ensure_issue_status_automation(self.db, trigger="sync")
        self.assertTrue(retry.processed)

    async def test_recent_running_record_blocks_a_second_run(self) -> None:
        state_repo = SqliteCacheStateRepository(self.db)
        await state_repo.upsert_state(
            AUTOMATION_CACHE_KEY,
            generated_at=None,
            sync_run_id=None,
            metadata={
                "status": "running",
                "targetSyncAt": "2024-05-01T00:00:00Z",
                "startedAt": "2999-01-01T00:00:00Z",
            },
        )
        result = await ensure_issue_status_automation(self.db)
        self.assertFalse(result.processed)

    async def test_abandoned_running_record_is_taken_over(self) -> None:
        state_repo = SqliteCacheStateRepository(self.db)
        await state_repo.upsert_state(
            AUTOMATION_CACHE_KEY,
            generated_at=None,
            sync_run_id=None,
            metadata={
                "status": "running",
                "targetSyncAt": "2024-05-01T00:00:00Z",
                "startedAt": "2024-05-01T00:00:00Z",
            },
        )
        result = await ensure_issue_status_automation(self.db)
        self.assertTrue(result.processed)


if __name__ == "__main__":
    unittest.main()
