import json
import unittest
from datetime import datetime, timezone

import aiosqlite

from ghactivity.db.repositories.mention_classifications import SqliteMentionClassificationRepository
from ghactivity.db.sqlite_migrations import run_migrations
from ghactivity.errors import InvalidFilterError, ItemNotFoundError
from ghactivity.services.attention import (
    AttentionThresholds,
    MentionWait,
    ReviewRequestWait,
    dedupe_waits,
    get_attention_insights,
    resolve_attention_sets,
    set_mention_manual_decision,
)

# Friday noon; every fixture timestamp is a weekday noon in UTC.
NOW = datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc)


class DedupeWaitsTests(unittest.TestCase):
    def test_keeps_longest_wait_per_key(self) -> None:
        records = [
            MentionWait("C1", "I1", "U2", "2024-05-17T12:00:00Z", 4),
            MentionWait("C1", "I1", "U2", "2024-05-10T12:00:00Z", 9),
            MentionWait("C1", "I1", "U3", "2024-05-10T12:00:00Z", 1),
        ]
        result = dedupe_waits(records, lambda record: record.target_user_id)
        self.assertEqual([(r.target_user_id, r.waiting_days) for r in result], [("U2", 9), ("U3", 1)])

    def test_records_without_a_key_are_kept(self) -> None:
        records = [
            ReviewRequestWait("RR1", "P1", None, None, 3),
            ReviewRequestWait("RR2", "P1", None, None, 7),
        ]
        self.assertEqual(len(dedupe_waits(records, lambda record: record.reviewer_id)), 2)


class AttentionThresholdTests(unittest.TestCase):
    def test_defaults_and_overrides(self) -> None:
        thresholds = AttentionThresholds.from_values({"stalePrDays": 15, "idlePrDays": None})
        self.assertEqual(thresholds.stale_pr_days, 15)
        self.assertEqual(thresholds.idle_pr_days, 10)
        self.assertEqual(thresholds.backlog_issue_days, 40)

    def test_mention_threshold_never_drops_below_default(self) -> None:
        self.assertEqual(AttentionThresholds.from_values({"unansweredMentionDays": 1}).unanswered_mention_days, 5)
        self.assertEqual(AttentionThresholds.from_values({"unansweredMentionDays": 8}).unanswered_mention_days, 8)


class AttentionEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await self.db.executemany(
            "INSERT INTO users (id, login) VALUES (?, ?)",
            [("U1", "alice"), ("U2", "bob"), ("U3", "carol")],
        )
        await self.db.executemany(
            """INSERT INTO pull_requests (id, number, state, repository_id, author_id,
                                          github_created_at, github_updated_at)
               VALUES (?, ?, 'OPEN', 'R1', 'U1', ?, ?)""",
            [
                # Exactly 20 business days old and idle for as long.
                ("P1", 1, "2024-05-03T12:00:00Z", "2024-05-03T12:00:00Z"),
                # 19 business days old, updated yesterday.
                ("P2", 2, "2024-05-06T12:00:00Z", "2024-05-30T12:00:00Z"),
            ],
        )
        await self.db.executemany(
            "INSERT INTO review_requests (id, pull_request_id, reviewer_id, requested_at) VALUES (?, ?, ?, ?)",
            [
                ("RR1", "P2", "U2", "2024-05-24T12:00:00Z"),
                ("RR2", "P2", "U3", "2024-05-24T12:00:00Z"),
                ("RR3", "P1", "U2", "2024-05-29T12:00:00Z"),
                ("RR4", "P2", "U2", "2024-05-17T12:00:00Z"),
            ],
        )
        await self.db.execute(
            "INSERT INTO reviews (id, pull_request_id, author_id, state, github_submitted_at) VALUES (?, ?, ?, ?, ?)",
            ("RV1", "P2", "U3", "APPROVED", "2024-05-27T12:00:00Z"),
        )
        await self.db.executemany(
            "INSERT INTO issues (id, number, state, url, repository_id, author_id, github_created_at) VALUES (?, ?, 'OPEN', ?, 'R1', 'U1', ?)",
            [
                ("I1", 10, "https://github.com/acme/app/issues/10", "2024-03-01T12:00:00Z"),
                ("I2", 11, "https://github.com/acme/app/issues/11", "2024-03-01T12:00:00Z"),
                ("D1", 12, "https://github.com/acme/app/discussions/12", "2024-03-01T12:00:00Z"),
            ],
        )
        await self.db.execute(
            """INSERT INTO activity_issue_status_history (issue_id, status, occurred_at, source, inserted_at)
               VALUES ('I2', 'in_progress', '2024-05-03T12:00:00Z', 'activity', '2024-05-03T12:00:00Z')"""
        )
        await self.db.executemany(
            "INSERT INTO comments (id, issue_id, author_id, github_created_at, data) VALUES (?, ?, ?, ?, ?)",
            [
                ("C1", "I1", "U1", "2024-05-17T12:00:00Z", json.dumps({"body": "@bob can you check this?"})),
                ("C2", "I2", "U1", "2024-05-17T12:00:00Z", json.dumps({"body": "ping @carol"})),
                ("C3", "I1", "U1", "2024-05-20T12:00:00Z", json.dumps({"body": "@bob @alice any news?"})),
            ],
        )
        await self.db.execute(
            "INSERT INTO reactions (id, subject_type, subject_id, user_id, content, github_created_at) VALUES (?, ?, ?, ?, ?, ?)",
            ("RX1", "comment", "C2", "U3", "THUMBS_UP", "2024-05-18T12:00:00Z"),
        )
        await self.db.commit()

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_pull_request_thresholds_are_inclusive(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.stale_open_prs, {"P1"})
        self.assertEqual(sets.idle_open_prs, {"P1"})

        lowered = await resolve_attention_sets(self.db, now=NOW, thresholds=AttentionThresholds(stale_pr_days=19))
        self.assertEqual(lowered.stale_open_prs, {"P1", "P2"})

    async def test_review_requests_are_deduplicated_per_reviewer(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.stuck_review_requests, {"P2"})
        waits = sets.review_request_details["P2"]
        self.assertEqual([(w.reviewer_id, w.request_id, w.waiting_days) for w in waits], [("U2", "RR4", 10)])

    async def test_issue_backlog_and_stalled_progress(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.backlog_issues, {"I1"})
        self.assertEqual(sets.stalled_in_progress_issues, {"I2"})

    async def test_unanswered_mentions(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        # carol reacted to her mention; alice wrote C3 herself.
        self.assertEqual(sets.unanswered_mentions, {"I1"})
        waits = sets.mention_details["I1"]
        self.assertEqual([(w.comment_id, w.target_user_id, w.waiting_days) for w in waits], [("C1", "U2", 10)])

    async def test_reply_after_the_mention_answers_it(self) -> None:
        await self.db.execute(
            "INSERT INTO comments (id, issue_id, author_id, github_created_at, data) VALUES (?, ?, ?, ?, ?)",
            ("C4", "I1", "U2", "2024-05-21T12:00:00Z", json.dumps({"body": "Looking now"})),
        )
        await self.db.commit()
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.unanswered_mentions, set())

    async def test_manual_suppression_overrides_and_is_reported(self) -> None:
        await set_mention_manual_decision(self.db, "C1", "U2", "suppress")
        result = await set_mention_manual_decision(self.db, "C3", "U2", "suppress")
        self.assertEqual(result["manualDecision"], "suppress")

        insights = await get_attention_insights(self.db, now=NOW)
        self.assertEqual(insights["unansweredMentions"], [])
        suppressed = {(m["commentId"], m["manualDecision"]) for m in insights["suppressedMentions"]}
        self.assertEqual(suppressed, {("C1", "suppress"), ("C3", "suppress")})

        cleared = await set_mention_manual_decision(self.db, "C1", "U2", "clear")
        self.assertIsNone(cleared["manualDecision"])
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.unanswered_mentions, {"I1"})

    async def test_classifier_verdict_only_applies_when_requested(self) -> None:
        repo = SqliteMentionClassificationRepository(self.db)
        for comment_id in ("C1", "C3"):
            await repo.upsert_classification(
                comment_id, "U2",
                comment_body_hash="h", prompt_version="v1", requires_response=False,
                model="test", raw_response="NO",
            )
        self.assertEqual((await resolve_attention_sets(self.db, now=NOW)).unanswered_mentions, {"I1"})
        self.assertEqual(
            (await resolve_attention_sets(self.db, now=NOW, use_classifier=True)).unanswered_mentions,
            set(),
        )

        await set_mention_manual_decision(self.db, "C1", "U2", "force")
        sets = await resolve_attention_sets(self.db, now=NOW, use_classifier=True)
        self.assertEqual(sets.unanswered_mentions, {"I1"})
        self.assertEqual(sets.mention_details["I1"][0].manual_decision, "force")

    async def test_manual_decision_older_than_classifier_run_is_stale(self) -> None:
        await set_mention_manual_decision(self.db, "C1", "U2", "force")
        await self.db.execute(
            """UPDATE mention_classifications
               SET manual_requires_response_at = '2024-05-20T00:00:00Z', last_evaluated_at = '2024-05-21T00:00:00Z'
               WHERE comment_id = 'C1'"""
        )
        await self.db.commit()
        sets = await resolve_attention_sets(self.db, now=NOW)
        wait = sets.mention_details["I1"][0]
        self.assertEqual(wait.manual_decision, "force")
        self.assertTrue(wait.manual_decision_is_stale)

    async def test_manual_decision_validation(self) -> None:
        with self.assertRaises(InvalidFilterError):
            await set_mention_manual_decision(self.db, "C1", "U2", "maybe")
        with self.assertRaises(ItemNotFoundError):
            await set_mention_manual_decision(self.db, "missing", "U2", "suppress")

    async def test_insights_shape(self) -> None:
        insights = await get_attention_insights(self.db, now=NOW)
        self.assertEqual(insights["thresholds"]["stalePrDays"], 20)
        self.assertEqual([entry["id"] for entry in insights["staleOpenPrs"]], ["P1"])
        self.assertEqual(insights["stuckReviewRequests"][0]["waits"][0]["reviewerId"], "U2")
        self.assertEqual(insights["generatedAt"], "2024-05-31T12:00:00Z")

    async def test_excluded_repositories_and_users(self) -> None:
        await self.db.execute(
            "UPDATE sync_config SET excluded_repository_ids = ? WHERE id = 'default'", (json.dumps(["R1"]),)
        )
        await self.db.commit()
        insights = await get_attention_insights(self.db, now=NOW)
        self.assertEqual(insights["staleOpenPrs"], [])
        self.assertEqual(insights["backlogIssues"], [])
        self.assertEqual(insights["unansweredMentions"], [])


class AttentionBoundaryTests(unittest.IsolatedAsyncioTestCase):
    """Each category holds one item exactly on its default threshold and one a day short."""

    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await self.db.executemany(
            "INSERT INTO users (id, login) VALUES (?, ?)",
            [("U1", "alice"), ("U2", "bob"), ("U3", "carol")],
        )
        await self.db.executemany(
            "INSERT INTO issues (id, number, state, url, data, repository_id, author_id, github_created_at) VALUES (?, ?, 'OPEN', ?, ?, 'R1', 'U1', ?)",
            [
                ("B40", 1, "https://github.com/acme/app/issues/1", None, "2024-04-05T12:00:00Z"),
                ("B39", 2, "https://github.com/acme/app/issues/2", None, "2024-04-08T12:00:00Z"),
                ("S20", 3, "https://github.com/acme/app/issues/3", None, "2024-05-01T12:00:00Z"),
                ("S19", 4, "https://github.com/acme/app/issues/4", None, "2024-05-01T12:00:00Z"),
                ("M1", 5, "https://github.com/acme/app/issues/5", None, "2024-05-29T12:00:00Z"),
                # Discussion known only by its payload type.
                ("D2", 6, "https://github.com/acme/app/issues/6", json.dumps({"__typename": "Discussion"}),
                 "2024-01-02T12:00:00Z"),
            ],
        )
        await self.db.executemany(
            """INSERT INTO activity_issue_status_history (issue_id, status, occurred_at, source, inserted_at)
               VALUES (?, 'in_progress', ?, 'activity', ?)""",
            [
                ("S20", "2024-05-03T12:00:00Z", "2024-05-03T12:00:00Z"),
                ("S19", "2024-05-06T12:00:00Z", "2024-05-06T12:00:00Z"),
            ],
        )
        await self.db.executemany(
            """INSERT INTO pull_requests (id, number, state, repository_id, author_id,
                                          github_created_at, github_updated_at)
               VALUES (?, ?, 'OPEN', 'R1', 'U1', '2024-05-29T12:00:00Z', '2024-05-29T12:00:00Z')""",
            [("PA", 7), ("PB", 8)],
        )
        await self.db.executemany(
            "INSERT INTO review_requests (id, pull_request_id, reviewer_id, requested_at) VALUES (?, ?, ?, ?)",
            [
                ("RR5", "PA", "U2", "2024-05-24T12:00:00Z"),
                ("RR6", "PB", "U3", "2024-05-27T12:00:00Z"),
            ],
        )
        await self.db.executemany(
            "INSERT INTO comments (id, issue_id, author_id, github_created_at, data) VALUES (?, 'M1', 'U1', ?, ?)",
            [
                ("C5", "2024-05-24T12:00:00Z", json.dumps({"body": "@bob could you confirm?"})),
                ("C6", "2024-05-27T12:00:00Z", json.dumps({"body": "@carol any thoughts?"})),
            ],
        )
        await self.db.commit()

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_issue_thresholds_are_inclusive(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.backlog_issues, {"B40"})
        self.assertEqual(sets.stalled_in_progress_issues, {"S20"})

    async def test_review_request_threshold_is_inclusive(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.stuck_review_requests, {"PA"})
        self.assertEqual(
            [(w.request_id, w.waiting_days) for w in sets.review_request_details["PA"]], [("RR5", 5)]
        )

    async def test_mention_threshold_is_inclusive(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertEqual(sets.unanswered_mentions, {"M1"})
        self.assertEqual(
            [(w.comment_id, w.target_user_id, w.waiting_days) for w in sets.mention_details["M1"]],
            [("C5", "U2", 5)],
        )

    async def test_typename_discussion_is_not_an_issue(self) -> None:
        sets = await resolve_attention_sets(self.db, now=NOW)
        self.assertNotIn("D2", sets.backlog_issues)
        self.assertNotIn("D2", sets.stalled_in_progress_issues)


if __name__ == "__main__":
    unittest.main()
