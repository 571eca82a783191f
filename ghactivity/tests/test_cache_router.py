import types
import unittest
from unittest.mock import AsyncMock, patch

from fastapi import BackgroundTasks, HTTPException

from ghactivity.routers import cache as cache_router


class _FakeJobRunner:
    def __init__(self) -> None:
        self.started_ops: list[dict] = []
        self.automation_calls: list[dict] = []
        self.refresh_calls: list[dict] = []

    async def get_observability_snapshot(self):
        return {"activeOperationCount": 1, "activeOperations": [{"id": "OP-1"}], "recentOperations": [], "trackedOperationCount": 1}

    async def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "running"}][:limit]

    async def get_operation(self, operation_id):
        if operation_id == "OP-404":
            return None
        return {"id": operation_id, "status": "completed"}

    async def start_operation(self, kind, trigger="api", metadata=None):
        self.started_ops.append({"kind": kind, "trigger": trigger, "metadata": metadata or {}})
        return "OP-STARTED"

    async def run_automation(self, force=False, operation_id=None, trigger="api"):
        self.automation_calls.append({"force": force, "operation_id": operation_id, "trigger": trigger})
        return {"operation_id": operation_id or "OP-FOREGROUND", "status": "success", "insertedDone": 1}

    async def refresh_caches(self, operation_id=None, trigger="api"):
        self.refresh_calls.append({"operation_id": operation_id, "trigger": trigger})
        return {"operation_id": operation_id or "OP-CACHES", "counts": {"activity-issue-links": 3}}

    async def refresh_snapshot(self, operation_id=None, trigger="api"):
        return {"operation_id": operation_id or "OP-SNAPSHOT", "itemCount": 7}


class CacheRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, runner):
        return types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(job_runner=runner)
            )
        )

    async def test_status_includes_caches_automation_and_operations(self) -> None:
        request = self._request(_FakeJobRunner())
        with patch.object(cache_router.connection, "get_connection", AsyncMock(return_value=object())), \
                patch.object(cache_router, "get_cache_status", AsyncMock(return_value={"latestSyncRunId": "RUN-1", "caches": []})), \
                patch.object(cache_router, "get_automation_summary", AsyncMock(return_value={"pending": False})):
            payload = await cache_router.get_activity_cache_status(request)

        self.assertEqual(payload["status"], "active")
        self.assertEqual(payload["latestSyncRunId"], "RUN-1")
        self.assertFalse(payload["automation"]["pending"])
        self.assertEqual(payload["operations"]["activeOperationCount"], 1)

    async def test_missing_job_runner_is_unavailable(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.list_cache_operations(self._request(None), limit=5)
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_unknown_operation_is_not_found(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.get_cache_operation(self._request(_FakeJobRunner()), "OP-404")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_automation_background_returns_operation_id(self) -> None:
        runner = _FakeJobRunner()
        background = BackgroundTasks()
        payload = await cache_router.trigger_status_automation(
            self._request(runner),
            background,
            cache_router.AutomationRequest(force=True, background=True),
        )

        self.assertEqual(payload["operationId"], "OP-STARTED")
        self.assertEqual(len(background.tasks), 1)
        self.assertEqual(runner.started_ops[0], {"kind": "status_automation", "trigger": "api", "metadata": {"force": True}})

    async def test_automation_foreground_returns_stats(self) -> None:
        runner = _FakeJobRunner()
        payload = await cache_router.trigger_status_automation(
            self._request(runner),
            BackgroundTasks(),
            cache_router.AutomationRequest(background=False, trigger="manual"),
        )

        self.assertEqual(payload["mode"], "foreground")
        self.assertEqual(payload["operationId"], "OP-FOREGROUND")
        self.assertEqual(payload["stats"]["insertedDone"], 1)
        self.assertEqual(runner.automation_calls[0]["trigger"], "manual")

    async def test_cache_refresh_foreground(self) -> None:
        runner = _FakeJobRunner()
        payload = await cache_router.trigger_cache_refresh(
            self._request(runner),
            BackgroundTasks(),
            cache_router.JobRequest(background=False),
        )
        self.assertEqual(payload["stats"]["counts"]["activity-issue-links"], 3)
        self.assertEqual(payload["operation"]["status"], "completed")

    async def test_snapshot_background(self) -> None:
        runner = _FakeJobRunner()
        background = BackgroundTasks()
        payload = await cache_router.trigger_snapshot_refresh(
            self._request(runner), background, cache_router.JobRequest()
        )
        self.assertEqual(payload["mode"], "background")
        self.assertEqual(runner.started_ops[0]["kind"], "refresh_snapshot")
        self.assertEqual(len(background.tasks), 1)


if __name__ == "__main__":
    unittest.main()
