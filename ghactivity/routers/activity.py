"""Activity feed API router."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ghactivity.db import connection
from ghactivity.errors import ActivityError, to_http_exception
from ghactivity.models import (
    ActivityFilterOptions,
    ActivityFilters,
    ActivityItemDetail,
    ActivityListResult,
    ActivityPagination,
    ActivitySummary,
    ActivityThresholds,
    IssueStatusUpdate,
    ProjectFieldUpdate,
)
from ghactivity.services import activity_service

activity_router = APIRouter(prefix="/api/activity", tags=["activity"])


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def activity_filter_params(
    types: Optional[str] = Query(None, description="Comma-separated: issue,pull_request,discussion"),
    repositoryIds: Optional[str] = Query(None),
    labelKeys: Optional[str] = Query(None),
    issueTypeIds: Optional[str] = Query(None),
    issuePriorities: Optional[str] = Query(None),
    issueWeights: Optional[str] = Query(None),
    milestoneIds: Optional[str] = Query(None),
    pullRequestStatuses: Optional[str] = Query(None),
    issueBaseStatuses: Optional[str] = Query(None),
    linkedIssueStates: Optional[str] = Query(None),
    authorIds: Optional[str] = Query(None),
    assigneeIds: Optional[str] = Query(None),
    reviewerIds: Optional[str] = Query(None),
    mentionedUserIds: Optional[str] = Query(None),
    commenterIds: Optional[str] = Query(None),
    reactorIds: Optional[str] = Query(None),
    maintainerIds: Optional[str] = Query(None),
    statuses: Optional[str] = Query(None),
    attention: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    jumpToDate: Optional[str] = Query(None),
    myTodo: bool = Query(False),
    viewerId: Optional[str] = Query(None),
    unansweredMentionDays: Optional[int] = Query(None),
    reviewRequestDays: Optional[int] = Query(None),
    stalePrDays: Optional[int] = Query(None),
    idlePrDays: Optional[int] = Query(None),
    backlogIssueDays: Optional[int] = Query(None),
    stalledIssueDays: Optional[int] = Query(None),
) -> ActivityFilters:
    """Collect feed filters from query parameters; list values are comma-separated."""
    return ActivityFilters(
        types=_split(types),
        repositoryIds=_split(repositoryIds),
        labelKeys=_split(labelKeys),
        issueTypeIds=_split(issueTypeIds),
        issuePriorities=_split(issuePriorities),
        issueWeights=_split(issueWeights),
        milestoneIds=_split(milestoneIds),
        pullRequestStatuses=_split(pullRequestStatuses),
        issueBaseStatuses=_split(issueBaseStatuses),
        linkedIssueStates=_split(linkedIssueStates),
        authorIds=_split(authorIds),
        assigneeIds=_split(assigneeIds),
        reviewerIds=_split(reviewerIds),
        mentionedUserIds=_split(mentionedUserIds),
        commenterIds=_split(commenterIds),
        reactorIds=_split(reactorIds),
        maintainerIds=_split(maintainerIds),
        statuses=_split(statuses),
        attention=_split(attention),
        search=search,
        jumpToDate=jumpToDate,
        myTodo=myTodo,
        viewerId=viewerId,
        thresholds=ActivityThresholds(
            unansweredMentionDays=unansweredMentionDays,
            reviewRequestDays=reviewRequestDays,
            stalePrDays=stalePrDays,
            idlePrDays=idlePrDays,
            backlogIssueDays=backlogIssueDays,
            stalledIssueDays=stalledIssueDays,
        ),
    )


@activity_router.get("", response_model=ActivityListResult)
async def list_activity(
    filters: ActivityFilters = Depends(activity_filter_params),
    page: int = Query(1, ge=1),
    perPage: int = Query(25, ge=1),
    prefetchPages: int = Query(1, ge=1),
):
    """Return one page of the feed with a prefetch window."""
    db = await connection.get_connection()
    try:
        return await activity_service.list_activity_items(
            db, filters, ActivityPagination(page=page, perPage=perPage, prefetchPages=prefetchPages)
        )
    except ActivityError as exc:
        raise to_http_exception(exc) from exc


@activity_router.get("/summary", response_model=ActivitySummary)
async def get_activity_summary(
    token: str = Query(..., min_length=1),
    page: Optional[int] = Query(None, ge=1),
    filters: ActivityFilters = Depends(activity_filter_params),
):
    """Totals and jump index for a prefetch token issued by the list call."""
    db = await connection.get_connection()
    try:
        return await activity_service.get_summary(db, token, filters, page)
    except ActivityError as exc:
        raise to_http_exception(exc) from exc


@activity_router.get("/options", response_model=ActivityFilterOptions)
async def get_activity_filter_options():
    db = await connection.get_connection()
    return await activity_service.get_filter_options(db)


@activity_router.get("/{item_id}", response_model=ActivityItemDetail)
async def get_activity_item(item_id: str):
    db = await connection.get_connection()
    try:
        return await activity_service.get_item_detail(db, item_id)
    except ActivityError as exc:
        raise to_http_exception(exc) from exc


@activity_router.patch("/{item_id}/status", response_model=ActivityItemDetail)
async def update_issue_status(item_id: str, body: IssueStatusUpdate):
    """Record a manual activity status for an issue."""
    db = await connection.get_connection()
    try:
        return await activity_service.set_issue_status(db, item_id, body.status)
    except ActivityError as exc:
        raise to_http_exception(exc) from exc


@activity_router.delete("/{item_id}/status", response_model=ActivityItemDetail)
async def clear_issue_status(item_id: str):
    db = await connection.get_connection()
    try:
        return await activity_service.clear_issue_status(db, item_id)
    except ActivityError as exc:
        raise to_http_exception(exc) from exc


@activity_router.patch("/{item_id}/project-fields", response_model=ActivityItemDetail)
async def update_project_fields(item_id: str, body: ProjectFieldUpdate):
    """Override priority, weight, initiation options or start date of an issue."""
    db = await connection.get_connection()
    try:
        return await activity_service.update_project_fields(db, item_id, body)
    except ActivityError as exc:
        raise to_http_exception(exc) from exc


@activity_router.delete("/{item_id}/project-fields", response_model=ActivityItemDetail)
async def clear_project_fields(item_id: str):
    db = await connection.get_connection()
    try:
        return await activity_service.clear_project_fields(db, item_id)
    except ActivityError as exc:
        raise to_http_exception(exc) from exc
