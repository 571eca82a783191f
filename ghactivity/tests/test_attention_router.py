import types
import unittest
from unittest.mock import AsyncMock, patch

from fastapi import BackgroundTasks, HTTPException

from ghactivity.errors import InvalidFilterError
from ghactivity.models import MentionManualDecision
from ghactivity.routers import attention as attention_router


class _FakeJobRunner:
    def __init__(self) -> None:
        self.started_ops: list[dict] = []

    async def start_operation(self, kind, trigger="api", metadata=None):
        self.started_ops.append({"kind": kind, "trigger": trigger, "metadata": metadata or {}})
        return "OP-STARTED"

    async def classify_mentions(self, force=False, operation_id=None, trigger="api"):
        return {"operation_id": operation_id or "OP-CLASSIFY", "status": "completed", "updated": 2}

    async def get_operation(self, operation_id):
        return {"id": operation_id, "status": "completed"}


class AttentionRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, runner):
        return types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace(job_runner=runner)))

    async def test_thresholds_are_forwarded(self) -> None:
        with patch.object(attention_router.connection, "get_connection", AsyncMock(return_value=object())), \
                patch.object(attention_router, "get_attention_insights", AsyncMock(return_value={"staleOpenPrs": []})) as insights:
            payload = await attention_router.get_attention(
                useClassifier=True, unansweredMentionDays=None, reviewRequestDays=3,
                stalePrDays=None, idlePrDays=None, backlogIssueDays=None, stalledIssueDays=None,
            )

        self.assertEqual(payload, {"staleOpenPrs": []})
        kwargs = insights.await_args.kwargs
        self.assertTrue(kwargs["use_classifier"])
        self.assertEqual(kwargs["thresholds"].review_request_days, 3)
        self.assertEqual(kwargs["thresholds"].stale_pr_days, 20)

    async def test_invalid_manual_decision_is_bad_request(self) -> None:
        body = MentionManualDecision(commentId="C1", mentionedUserId="U2", decision="maybe")
        with patch.object(attention_router.connection, "get_connection", AsyncMock(return_value=object())), \
                patch.object(attention_router, "set_mention_manual_decision", AsyncMock(side_effect=InvalidFilterError("bad"))):
            with self.assertRaises(HTTPException) as ctx:
                await attention_router.set_manual_decision(body)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_classify_background_and_foreground(self) -> None:
        runner = _FakeJobRunner()
        background = BackgroundTasks()
        queued = await attention_router.classify_mentions(
            self._request(runner), background, attention_router.ClassifyRequest(force=True)
        )
        self.assertEqual(queued["operationId"], "OP-STARTED")
        self.assertEqual(runner.started_ops[0]["metadata"], {"force": True})
        self.assertEqual(len(background.tasks), 1)

        direct = await attention_router.classify_mentions(
            self._request(runner), BackgroundTasks(), attention_router.ClassifyRequest(background=False)
        )
        self.assertEqual(direct["mode"], "foreground")
        self.assertEqual(direct["stats"]["updated"], 2)

    async def test_classify_without_job_runner(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await attention_router.classify_mentions(
                self._request(None), BackgroundTasks(), attention_router.ClassifyRequest()
            )
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
