"""Pydantic models for the activity feed API."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional


# ── Query inputs ────────────────────────────────────────────────────

class ActivityThresholds(BaseModel):
    unansweredMentionDays: Optional[int] = None
    reviewRequestDays: Optional[int] = None
    stalePrDays: Optional[int] = None
    idlePrDays: Optional[int] = None
    backlogIssueDays: Optional[int] = None
    stalledIssueDays: Optional[int] = None


class ActivityFilters(BaseModel):
    types: list[str] = Field(default_factory=list)  # "issue" | "pull_request" | "discussion"
    repositoryIds: list[str] = Field(default_factory=list)
    labelKeys: list[str] = Field(default_factory=list)
    issueTypeIds: list[str] = Field(default_factory=list)
    issuePriorities: list[str] = Field(default_factory=list)
    issueWeights: list[str] = Field(default_factory=list)
    milestoneIds: list[str] = Field(default_factory=list)
    pullRequestStatuses: list[str] = Field(default_factory=list)
    issueBaseStatuses: list[str] = Field(default_factory=list)
    linkedIssueStates: list[str] = Field(default_factory=list)
    authorIds: list[str] = Field(default_factory=list)
    assigneeIds: list[str] = Field(default_factory=list)
    reviewerIds: list[str] = Field(default_factory=list)
    mentionedUserIds: list[str] = Field(default_factory=list)
    commenterIds: list[str] = Field(default_factory=list)
    reactorIds: list[str] = Field(default_factory=list)
    maintainerIds: list[str] = Field(default_factory=list)
    statuses: list[str] = Field(default_factory=list)
    attention: list[str] = Field(default_factory=list)
    search: Optional[str] = None
    jumpToDate: Optional[str] = None
    myTodo: bool = False
    viewerId: Optional[str] = None
    thresholds: ActivityThresholds = Field(default_factory=ActivityThresholds)


class ActivityPagination(BaseModel):
    page: int = 1
    perPage: int = 25
    prefetchPages: int = 1


class IssueStatusUpdate(BaseModel):
    status: str


class ProjectFieldUpdate(BaseModel):
    priority: Optional[str] = None
    weight: Optional[str] = None
    initiationOptions: Optional[str] = None
    startDate: Optional[str] = None
    expected: dict[str, Optional[str]] = Field(default_factory=dict)


class MentionManualDecision(BaseModel):
    commentId: str = Field(..., min_length=1)
    mentionedUserId: str = Field(..., min_length=1)
    decision: str  # "suppress" | "force" | "clear"


# ── Item shapes ─────────────────────────────────────────────────────

class ActivityUser(BaseModel):
    id: str
    login: Optional[str] = None
    name: Optional[str] = None
    avatarUrl: Optional[str] = None


class ActivityRepository(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    nameWithOwner: Optional[str] = None


class ActivityLabel(BaseModel):
    key: str
    name: str
    repositoryId: Optional[str] = None
    repositoryNameWithOwner: Optional[str] = None


class ActivityIssueType(BaseModel):
    id: str
    name: Optional[str] = None


class ActivityMilestone(BaseModel):
    id: str
    title: Optional[str] = None
    state: Optional[str] = None
    dueOn: Optional[str] = None
    url: Optional[str] = None


class ActivityAttentionFlags(BaseModel):
    unansweredMention: bool = False
    reviewRequestPending: bool = False
    staleOpenPr: bool = False
    idlePr: bool = False
    backlogIssue: bool = False
    stalledIssue: bool = False


class ActivityLinkedPullRequest(BaseModel):
    id: str
    number: Optional[int] = None
    title: Optional[str] = None
    state: Optional[str] = None
    status: str = "open"
    url: Optional[str] = None
    repositoryNameWithOwner: Optional[str] = None
    mergedAt: Optional[str] = None
    closedAt: Optional[str] = None
    updatedAt: Optional[str] = None


class ActivityLinkedIssue(BaseModel):
    id: str
    number: Optional[int] = None
    title: Optional[str] = None
    state: Optional[str] = None
    url: Optional[str] = None
    repositoryNameWithOwner: Optional[str] = None


class ActivityReviewWait(BaseModel):
    requestId: str
    pullRequestId: str
    reviewerId: Optional[str] = None
    reviewer: Optional[ActivityUser] = None
    requestedAt: Optional[str] = None
    waitingDays: int = 0


class ActivityMentionWait(BaseModel):
    commentId: str
    itemId: str
    targetUserId: Optional[str] = None
    user: Optional[ActivityUser] = None
    mentionedAt: Optional[str] = None
    waitingDays: int = 0
    commentExcerpt: str = ""
    commentUrl: Optional[str] = None
    authorId: Optional[str] = None
    requiresResponse: Optional[bool] = None
    manualDecision: Optional[str] = None
    manualDecisionIsStale: bool = False


class ActivityItem(BaseModel):
    id: str
    type: str  # "issue" | "pull_request" | "discussion"
    number: Optional[int] = None
    title: Optional[str] = None
    url: Optional[str] = None
    state: Optional[str] = None
    status: str = "open"  # "open" | "closed" | "merged"
    issueProjectStatus: Optional[str] = None
    issueProjectStatusSource: Optional[str] = None
    issueProjectStatusLocked: bool = False
    issueTodoProjectStatus: Optional[str] = None
    issueActivityStatus: Optional[str] = None
    issuePriority: Optional[str] = None
    issueWeight: Optional[str] = None
    repository: Optional[ActivityRepository] = None
    author: Optional[ActivityUser] = None
    assignees: list[ActivityUser] = Field(default_factory=list)
    reviewers: list[ActivityUser] = Field(default_factory=list)
    mentionedUsers: list[ActivityUser] = Field(default_factory=list)
    commenters: list[ActivityUser] = Field(default_factory=list)
    reactors: list[ActivityUser] = Field(default_factory=list)
    labels: list[ActivityLabel] = Field(default_factory=list)
    issueType: Optional[ActivityIssueType] = None
    milestone: Optional[ActivityMilestone] = None
    hasParentIssue: bool = False
    hasSubIssues: bool = False
    linkedPullRequests: list[ActivityLinkedPullRequest] = Field(default_factory=list)
    linkedIssues: list[ActivityLinkedIssue] = Field(default_factory=list)
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    closedAt: Optional[str] = None
    mergedAt: Optional[str] = None
    businessDaysOpen: Optional[int] = None
    businessDaysIdle: Optional[int] = None
    businessDaysSinceInProgress: Optional[int] = None
    businessDaysInProgressOpen: Optional[int] = None
    attention: ActivityAttentionFlags = Field(default_factory=ActivityAttentionFlags)
    reviewRequestWaits: list[ActivityReviewWait] = Field(default_factory=list)
    mentionWaits: list[ActivityMentionWait] = Field(default_factory=list)


class ActivityComment(BaseModel):
    id: str
    author: Optional[ActivityUser] = None
    body: str = ""
    url: Optional[str] = None
    reviewId: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class ActivityProjectFields(BaseModel):
    priority: Optional[str] = None
    priorityUpdatedAt: Optional[str] = None
    weight: Optional[str] = None
    weightUpdatedAt: Optional[str] = None
    initiationOptions: Optional[str] = None
    initiationOptionsUpdatedAt: Optional[str] = None
    startDate: Optional[str] = None
    startDateUpdatedAt: Optional[str] = None


class ActivityItemDetail(BaseModel):
    item: ActivityItem
    body: str = ""
    comments: list[ActivityComment] = Field(default_factory=list)
    todoStatusTimes: dict[str, Optional[str]] = Field(default_factory=dict)
    activityStatusTimes: dict[str, Optional[str]] = Field(default_factory=dict)
    workStartedAt: Optional[str] = None
    workCompletedAt: Optional[str] = None
    projectFields: ActivityProjectFields = Field(default_factory=ActivityProjectFields)


# ── List / summary results ──────────────────────────────────────────

class PageInfo(BaseModel):
    page: int
    perPage: int
    totalCount: Optional[int] = None
    totalPages: Optional[int] = None
    hasMore: bool = False


class CacheMetadata(BaseModel):
    snapshotGeneratedAt: Optional[str] = None
    cachesGeneratedAt: Optional[str] = None
    syncRunId: Optional[str] = None
    lastSyncCompletedAt: Optional[str] = None
    timezone: Optional[str] = None


class PrefetchPage(BaseModel):
    page: int
    items: list[ActivityItem] = Field(default_factory=list)


class PrefetchInfo(BaseModel):
    token: str
    filterFingerprint: str
    page: int
    perPage: int
    requestedPages: int
    bufferedPages: int
    hasMore: bool = False
    pages: list[PrefetchPage] = Field(default_factory=list)
    expiresAt: Optional[str] = None


class ActivityListResult(BaseModel):
    items: list[ActivityItem] = Field(default_factory=list)
    pageInfo: PageInfo
    cacheMetadata: CacheMetadata = Field(default_factory=CacheMetadata)
    prefetch: Optional[PrefetchInfo] = None


class JumpIndexEntry(BaseModel):
    page: int
    itemId: str
    updatedAt: Optional[str] = None


class ActivitySummary(BaseModel):
    totalCount: int
    totalPages: int
    perPage: int
    page: int
    jumpIndex: list[JumpIndexEntry] = Field(default_factory=list)


# ── Filter options ──────────────────────────────────────────────────

class FilterOptionRepository(BaseModel):
    id: str
    name: Optional[str] = None
    nameWithOwner: Optional[str] = None


class FilterOptionUser(BaseModel):
    id: str
    login: Optional[str] = None
    name: Optional[str] = None
    avatarUrl: Optional[str] = None


class ActivityFilterOptions(BaseModel):
    repositories: list[FilterOptionRepository] = Field(default_factory=list)
    labels: list[ActivityLabel] = Field(default_factory=list)
    users: list[FilterOptionUser] = Field(default_factory=list)
    issueTypes: list[ActivityIssueType] = Field(default_factory=list)
    milestones: list[ActivityMilestone] = Field(default_factory=list)
    issuePriorities: list[str] = Field(default_factory=lambda: ["P0", "P1", "P2"])
    issueWeights: list[str] = Field(default_factory=lambda: ["Heavy", "Medium", "Light"])
