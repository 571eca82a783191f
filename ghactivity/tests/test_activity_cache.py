import json
import sqlite3
import unittest

import aiosqlite

from ghactivity.db.repositories.activity_caches import SqliteActivityCacheRepository
from ghactivity.db.sqlite_migrations import run_migrations
from ghactivity.services.activity_cache import (
    build_filter_options,
    caches_are_fresh,
    ensure_activity_caches,
    get_cache_status,
    get_filter_options,
    get_linked_issues_map,
    get_linked_pull_requests_map,
    refresh_activity_caches,
)


class BuildFilterOptionsTests(unittest.TestCase):
    def test_enumerations(self) -> None:
        sources = {
            "repositories": [{"id": "R1", "name": "app", "name_with_owner": "acme/app"}],
            "users": [
                {"id": "U1", "login": "zed"},
                {"id": "U2", "login": "dependabot"},
                {"id": "U3", "login": "amy"},
                {"id": "U4", "login": "octoaide"},
                {"id": "U5", "login": "ghost"},
            ],
            "issues": [
                {
                    "id": "I1",
                    "repository_id": "R1",
                    "url": "https://github.com/acme/app/issues/1",
                    "data": json.dumps({
                        "labels": {"nodes": [{"name": "bug"}, {"name": "ui"}]},
                        "milestone": {"id": "M1", "title": "v1"},
                    }),
                },
                {
                    "id": "D1",
                    "repository_id": "R1",
                    "url": "https://github.com/acme/app/discussions/2",
                    "data": json.dumps({"milestone": {"id": "M9", "title": "ignored"}}),
                },
            ],
            "pull_requests": [
                {"id": "P1", "repository_id": "R1", "data": json.dumps({"labels": {"nodes": [{"name": "bug"}]}})},
            ],
        }
        options = build_filter_options(sources, excluded_user_ids=["U5"])

        self.assertEqual([label["key"] for label in options["labels"]], ["acme/app:bug", "acme/app:ui"])
        self.assertEqual([user["login"] for user in options["users"]], ["octoaide", "dependabot", "amy", "zed"])
        self.assertEqual(options["issueTypes"], [{"id": "label:issue_type:bug", "name": "Bug"}])
        self.assertEqual([m["id"] for m in options["milestones"]], ["M1"])
        self.assertEqual(options["issuePriorities"], ["P0", "P1", "P2"])
        self.assertEqual(options["repositories"][0]["nameWithOwner"], "acme/app")


class ActivityCacheRefreshTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await self.db.execute(
            "INSERT INTO repositories (id, name, name_with_owner) VALUES ('R1', 'app', 'acme/app')"
        )
        await self.db.execute("INSERT INTO users (id, login) VALUES ('U1', 'alice')")
        await self.db.execute(
            "INSERT INTO issues (id, number, title, state, url, repository_id) VALUES ('I1', 1, 'Crash', 'OPEN', 'https://github.com/acme/app/issues/1', 'R1')"
        )
        await self.db.executemany(
            """INSERT INTO pull_requests (id, number, title, state, merged, repository_id, author_id,
                                          github_created_at, github_closed_at, github_merged_at)
               VALUES (?, ?, ?, ?, ?, 'R1', 'U1', ?, ?, ?)""",
            [
                ("P1", 2, "Fix crash", "MERGED", 1, "2024-04-01T00:00:00Z", "2024-04-02T00:00:00Z", "2024-04-02T00:00:00Z"),
                ("P2", 3, "Try again", "CLOSED", 0, "2024-04-03T00:00:00Z", "2024-04-04T00:00:00Z", None),
            ],
        )
        await self.db.executemany(
            "INSERT INTO pull_request_issues (pull_request_id, issue_id) VALUES (?, 'I1')", [("P1",), ("P2",)]
        )
        await self._add_sync_run("RUN-1", "2024-05-01T00:00:00Z")

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _add_sync_run(self, run_id: str, completed_at: str) -> None:
        await self.db.execute(
            "INSERT INTO sync_runs (id, status, started_at, completed_at) VALUES (?, 'success', ?, ?)",
            (run_id, completed_at, completed_at),
        )
        await self.db.commit()

    async def test_refresh_stamps_every_cache_with_the_sync_run(self) -> None:
        self.assertFalse(await caches_are_fresh(self.db))
        result = await refresh_activity_caches(self.db, reason="test")

        self.assertEqual(result["syncRunId"], "RUN-1")
        self.assertEqual(result["counts"]["activity-issue-links"], 2)
        status = await get_cache_status(self.db)
        self.assertEqual(status["latestSyncRunId"], "RUN-1")
        self.assertTrue(all(cache["fresh"] for cache in status["caches"]))

    async def test_ensure_is_a_no_op_until_a_new_sync_run(self) -> None:
        self.assertTrue(await ensure_activity_caches(self.db))
        self.assertFalse(await ensure_activity_caches(self.db))
        self.assertTrue(await ensure_activity_caches(self.db, force=True))

        await self._add_sync_run("RUN-2", "2024-05-02T00:00:00Z")
        self.assertFalse(await caches_are_fresh(self.db))
        self.assertTrue(await ensure_activity_caches(self.db))
        status = await get_cache_status(self.db)
        self.assertEqual({cache["syncRunId"] for cache in status["caches"]}, {"RUN-2"})

    async def test_link_maps(self) -> None:
        await refresh_activity_caches(self.db)
        links = await get_linked_pull_requests_map(self.db, ["I1"])
        self.assertEqual(
            [(link["pull_request_id"], link["pr_status"]) for link in links["I1"]],
            [("P1", "merged"), ("P2", "closed")],
        )
        self.assertEqual(links["I1"][0]["pr_repository_name_with_owner"], "acme/app")

        issues = await get_linked_issues_map(self.db, ["P1", "P2"])
        self.assertEqual(issues["P1"][0]["issue_title"], "Crash")
        self.assertEqual(issues["P2"][0]["issue_repository"], "acme/app")
        self.assertEqual(await get_linked_issues_map(self.db, []), {})

    async def test_filter_options_are_built_on_first_read(self) -> None:
        options = await get_filter_options(self.db)
        self.assertEqual([repo["id"] for repo in options["repositories"]], ["R1"])
        self.assertEqual([user["login"] for user in options["users"]], ["alice"])

    async def test_failed_rebuild_leaves_previous_cache_visible(self) -> None:
        await refresh_activity_caches(self.db)
        repo = SqliteActivityCacheRepository(self.db)

        with self.assertRaises(sqlite3.IntegrityError):
            await repo.replace_all(
                filter_options={"repositories": []},
                issue_links=[{"issue_id": "I1", "pull_request_id": None}],
                pull_request_links=[],
                states={},
            )

        self.assertEqual(len((await repo.get_issue_links(["I1"]))["I1"]), 2)
        self.assertEqual([r["id"] for r in (await repo.get_filter_options())["repositories"]], ["R1"])


if __name__ == "__main__":
    unittest.main()
