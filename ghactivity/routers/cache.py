"""Activity cache, snapshot and status automation API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel

from ghactivity.db import connection
from ghactivity.services.activity_cache import get_cache_status
from ghactivity.services.status_automation import get_automation_summary

logger = logging.getLogger("ghactivity.cache")

cache_router = APIRouter(prefix="/api/activity-cache", tags=["activity-cache"])


class JobRequest(BaseModel):
    background: bool = True
    trigger: str = "api"


class AutomationRequest(BaseModel):
    force: bool = False
    background: bool = True
    trigger: str = "api"


def _get_job_runner(request: Request):
    job_runner = getattr(request.app.state, "job_runner", None)
    if not job_runner:
        raise HTTPException(status_code=503, detail="Job runner not initialized")
    return job_runner


async def _foreground_result(job_runner, stats: dict) -> dict:
    operation_id = str(stats.get("operation_id") or "")
    operation = await job_runner.get_operation(operation_id) if operation_id else None
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": operation_id,
        "stats": stats,
        "operation": operation,
    }


@cache_router.get("/status")
async def get_activity_cache_status(request: Request):
    """Freshness of every derived cache plus live operations."""
    job_runner = _get_job_runner(request)
    db = await connection.get_connection()
    return {
        "status": "active",
        **await get_cache_status(db),
        "automation": await get_automation_summary(db),
        "operations": await job_runner.get_observability_snapshot(),
    }


@cache_router.get("/operations")
async def list_cache_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    job_runner = _get_job_runner(request)
    operations = await job_runner.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@cache_router.get("/operations/{operation_id}")
async def get_cache_operation(request: Request, operation_id: str):
    job_runner = _get_job_runner(request)
    operation = await job_runner.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": f"Operation {operation_id} not found"})
    return operation


@cache_router.post("/refresh")
async def trigger_cache_refresh(request: Request, background_tasks: BackgroundTasks, body: JobRequest):
    """Rebuild filter options and link caches."""
    job_runner = _get_job_runner(request)
    if body.background:
        operation_id = await job_runner.start_operation("refresh_caches", trigger=body.trigger)
        background_tasks.add_task(job_runner.refresh_caches, operation_id=operation_id, trigger=body.trigger)
        return {
            "status": "ok",
            "mode": "background",
            "message": "Activity cache refresh triggered in background",
            "operationId": operation_id,
        }
    stats = await job_runner.refresh_caches(trigger=body.trigger)
    return await _foreground_result(job_runner, stats)


@cache_router.post("/snapshot")
async def trigger_snapshot_refresh(request: Request, background_tasks: BackgroundTasks, body: JobRequest):
    """Rebuild the activity item snapshot from the raw tables."""
    job_runner = _get_job_runner(request)
    if body.background:
        operation_id = await job_runner.start_operation("refresh_snapshot", trigger=body.trigger)
        background_tasks.add_task(job_runner.refresh_snapshot, operation_id=operation_id, trigger=body.trigger)
        return {
            "status": "ok",
            "mode": "background",
            "message": "Activity snapshot rebuild triggered in background",
            "operationId": operation_id,
        }
    stats = await job_runner.refresh_snapshot(trigger=body.trigger)
    return await _foreground_result(job_runner, stats)


@cache_router.get("/status-automation")
async def get_status_automation():
    db = await connection.get_connection()
    return await get_automation_summary(db)


@cache_router.post("/status-automation")
async def trigger_status_automation(request: Request, background_tasks: BackgroundTasks, body: AutomationRequest):
    """Run the issue status automation; ``force`` ignores the sync watermark."""
    job_runner = _get_job_runner(request)
    if body.background:
        operation_id = await job_runner.start_operation(
            "status_automation",
            trigger=body.trigger,
            metadata={"force": bool(body.force)},
        )
        background_tasks.add_task(
            job_runner.run_automation,
            force=body.force,
            operation_id=operation_id,
            trigger=body.trigger,
        )
        return {
            "status": "ok",
            "mode": "background",
            "message": "Status automation triggered in background",
            "operationId": operation_id,
        }
    stats = await job_runner.run_automation(force=body.force, trigger=body.trigger)
    logger.info("Status automation run from API: %s", stats.get("status"))
    return await _foreground_result(job_runner, stats)
