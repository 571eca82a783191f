"""Attention insights API router."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel

from ghactivity.db import connection
from ghactivity.errors import ActivityError, to_http_exception
from ghactivity.models import MentionManualDecision
from ghactivity.services.attention import AttentionThresholds, get_attention_insights, set_mention_manual_decision

attention_router = APIRouter(prefix="/api/attention", tags=["attention"])


class ClassifyRequest(BaseModel):
    force: bool = False
    background: bool = True
    trigger: str = "api"


def _get_job_runner(request: Request):
    job_runner = getattr(request.app.state, "job_runner", None)
    if not job_runner:
        raise HTTPException(status_code=503, detail="Job runner not initialized")
    return job_runner


@attention_router.get("")
async def get_attention(
    useClassifier: bool = Query(False),
    unansweredMentionDays: Optional[int] = Query(None, ge=1),
    reviewRequestDays: Optional[int] = Query(None, ge=1),
    stalePrDays: Optional[int] = Query(None, ge=1),
    idlePrDays: Optional[int] = Query(None, ge=1),
    backlogIssueDays: Optional[int] = Query(None, ge=1),
    stalledIssueDays: Optional[int] = Query(None, ge=1),
):
    """Every attention category with its items and waits."""
    thresholds = AttentionThresholds.from_values({
        "unansweredMentionDays": unansweredMentionDays,
        "reviewRequestDays": reviewRequestDays,
        "stalePrDays": stalePrDays,
        "idlePrDays": idlePrDays,
        "backlogIssueDays": backlogIssueDays,
        "stalledIssueDays": stalledIssueDays,
    })
    db = await connection.get_connection()
    return await get_attention_insights(db, thresholds=thresholds, use_classifier=useClassifier)


@attention_router.post("/unanswered-mentions/manual")
async def set_manual_decision(body: MentionManualDecision):
    """Suppress, force or clear one mention regardless of the classifier."""
    db = await connection.get_connection()
    try:
        return await set_mention_manual_decision(db, body.commentId, body.mentionedUserId, body.decision)
    except ActivityError as exc:
        raise to_http_exception(exc) from exc


@attention_router.post("/unanswered-mentions/classify")
async def classify_mentions(request: Request, background_tasks: BackgroundTasks, body: ClassifyRequest):
    """Run the mention classifier with operation tracking."""
    job_runner = _get_job_runner(request)
    if body.background:
        operation_id = await job_runner.start_operation(
            "classify_mentions",
            trigger=body.trigger,
            metadata={"force": bool(body.force)},
        )
        background_tasks.add_task(
            job_runner.classify_mentions,
            force=body.force,
            operation_id=operation_id,
            trigger=body.trigger,
        )
        return {
            "status": "ok",
            "mode": "background",
            "message": "Mention classification triggered in background",
            "operationId": operation_id,
        }

    stats = await job_runner.classify_mentions(force=body.force, trigger=body.trigger)
    operation_id = str(stats.get("operation_id") or "")
    operation = await job_runner.get_operation(operation_id) if operation_id else None
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": operation_id,
        "stats": stats,
        "operation": operation,
    }
