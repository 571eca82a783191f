import json
import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import aiosqlite
import httpx

from ghactivity.db.repositories.mention_classifications import SqliteMentionClassificationRepository
from ghactivity.db.sqlite_migrations import run_migrations
from ghactivity.services.mention_classifier import (
    MAX_COMMENT_CHARS,
    PROMPT_VERSION,
    ClassifierResponseError,
    MentionClassifierClient,
    build_batch_prompt,
    classify_unanswered_mentions,
    parse_batch_answers,
    truncate_comment_body,
)

NOW = datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc)


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class PromptTests(unittest.TestCase):
    def test_parse_answers(self) -> None:
        self.assertEqual(parse_batch_answers('Sure: ["Yes", "no", true]', 3), [True, False, True])
        with self.assertRaises(ClassifierResponseError):
            parse_batch_answers('["Yes"]', 2)
        with self.assertRaises(ClassifierResponseError):
            parse_batch_answers("Yes", 1)
        with self.assertRaises(ClassifierResponseError):
            parse_batch_answers(None, 1)

    def test_long_bodies_are_centred_on_the_mention(self) -> None:
        body = "a" * 3000 + " @bob please look " + "b" * 3000
        snippet = truncate_comment_body(body)
        self.assertLessEqual(len(snippet), MAX_COMMENT_CHARS + 6)
        self.assertIn("@bob please look", snippet)
        self.assertTrue(snippet.startswith("..."))
        self.assertTrue(snippet.endswith("..."))
        self.assertEqual(truncate_comment_body("short @bob"), "short @bob")

    def test_prompt_numbers_every_candidate(self) -> None:
        prompt = build_batch_prompt([
            {"target_login": "bob", "body": "@bob review?"},
            {"target_login": None, "body": "thanks @carol"},
        ])
        self.assertIn("There are 2 GitHub comments.", prompt)
        self.assertIn("1. Mentioned user: bob", prompt)
        self.assertIn("2. Mentioned user: (unknown)", prompt)


class ClassifierClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_posts_chat_completion(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_completion('["Yes"]'))

        client = MentionClassifierClient(
            api_key="sk-test", base_url="https://llm.test/v1/", model="m", transport=httpx.MockTransport(handler)
        )
        verdicts, raw = await client.classify([{"target_login": "bob", "body": "@bob?"}])

        self.assertEqual(verdicts, [True])
        self.assertEqual(raw["choices"][0]["message"]["content"], '["Yes"]')
        self.assertEqual(str(seen[0].url), "https://llm.test/v1/chat/completions")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer sk-test")
        self.assertEqual(json.loads(seen[0].content)["model"], "m")

    async def test_server_errors_are_retried(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(503)
            return httpx.Response(200, json=_completion('["No"]'))

        client = MentionClassifierClient(api_key="k", transport=httpx.MockTransport(handler))
        with patch("ghactivity.services.mention_classifier.asyncio.sleep", AsyncMock()):
            verdicts, _ = await client.classify([{"target_login": "bob", "body": "@bob fyi"}])
        self.assertEqual(verdicts, [False])
        self.assertEqual(calls["count"], 2)

    async def test_client_errors_are_not_retried(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            return httpx.Response(401, json={"error": "bad key"})

        client = MentionClassifierClient(api_key="k", transport=httpx.MockTransport(handler))
        with self.assertRaises(httpx.HTTPStatusError):
            await client.classify([{"target_login": "bob", "body": "@bob"}])
        self.assertEqual(calls["count"], 1)


class ClassifyMentionsTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await self.db.executemany(
            "INSERT INTO users (id, login) VALUES (?, ?)", [("U1", "alice"), ("U2", "bob"), ("U3", "carol")]
        )
        await self.db.execute(
            "INSERT INTO issues (id, number, state, repository_id, author_id, github_created_at) VALUES ('I1', 1, 'OPEN', 'R1', 'U1', '2024-05-01T12:00:00Z')"
        )
        await self.db.executemany(
            "INSERT INTO comments (id, issue_id, author_id, github_created_at, data) VALUES (?, 'I1', 'U1', ?, ?)",
            [
                ("C1", "2024-05-17T12:00:00Z", json.dumps({"body": "@bob can you review?"})),
                ("C2", "2024-05-17T12:00:00Z", json.dumps({"body": "thanks @carol for the fix"})),
            ],
        )
        await self.db.commit()
        self.requests = 0

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests += 1
            return httpx.Response(200, json=_completion('["Yes", "No"]'))

        self.client = MentionClassifierClient(api_key="k", model="m", transport=httpx.MockTransport(handler))

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_verdicts_are_stored_and_reused(self) -> None:
        summary = await classify_unanswered_mentions(self.db, now=NOW, client=self.client)

        self.assertEqual(summary["status"], "completed")
        self.assertEqual(summary["totalCandidates"], 2)
        self.assertEqual(summary["updated"], 2)
        self.assertEqual(summary["requiresResponseCount"], 1)
        self.assertEqual(summary["notRequiringResponseCount"], 1)
        records = await SqliteMentionClassificationRepository(self.db).get_many([("C1", "U2"), ("C2", "U3")])
        self.assertTrue(records[("C1", "U2")]["requires_response"])
        self.assertFalse(records[("C2", "U3")]["requires_response"])
        self.assertEqual(records[("C1", "U2")]["prompt_version"], PROMPT_VERSION)

        again = await classify_unanswered_mentions(self.db, now=NOW, client=self.client)
        self.assertEqual(again["skipped"], 2)
        self.assertEqual(again["attempted"], 0)
        self.assertEqual(self.requests, 1)

        forced = await classify_unanswered_mentions(self.db, now=NOW, client=self.client, force=True)
        self.assertEqual(forced["attempted"], 2)
        self.assertEqual(forced["unchanged"], 2)

    async def test_edited_comment_is_re_evaluated(self) -> None:
        await classify_unanswered_mentions(self.db, now=NOW, client=self.client)
        await self.db.execute(
            "UPDATE comments SET data = ? WHERE id = 'C2'", (json.dumps({"body": "thanks @carol, can you backport?"}),)
        )
        await self.db.commit()

        def single(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_completion('["Yes"]'))

        client = MentionClassifierClient(api_key="k", model="m", transport=httpx.MockTransport(single))
        summary = await classify_unanswered_mentions(self.db, now=NOW, client=client)
        self.assertEqual(summary["skipped"], 1)
        self.assertEqual(summary["attempted"], 1)
        self.assertEqual(summary["updated"], 1)

    async def test_bad_model_output_counts_as_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_completion("I cannot answer that"))

        client = MentionClassifierClient(api_key="k", transport=httpx.MockTransport(handler))
        summary = await classify_unanswered_mentions(self.db, now=NOW, client=client)
        self.assertEqual(summary["errors"], 2)
        self.assertEqual(summary["updated"], 0)

    async def test_missing_api_key_skips(self) -> None:
        with patch("ghactivity.services.mention_classifier.config.OPENAI_API_KEY", ""):
            summary = await classify_unanswered_mentions(self.db, now=NOW)
        self.assertEqual(summary["status"], "skipped")


if __name__ == "__main__":
    unittest.main()
