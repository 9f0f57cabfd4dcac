"""Pydantic schemas for thread lifecycle REST endpoints and broadcast payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from threadboard.workflows.threads.board import BoardColumn
from threadboard.workflows.threads.models import (
    PullRequestChecksStatus,
    PullRequestStatus,
)
from threadboard.workflows.threads.status import ThreadStatus


class BroadcastThreadData(BaseModel):
    """Change notification published to a user's open views.

    Absent fields mean "not part of this change"; only set fields are sent.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    thread_id: str = Field(..., alias="threadId")
    thread_chat_id: Optional[str] = Field(None, alias="threadChatId")
    thread_status_updated: Optional[ThreadStatus] = Field(
        None, alias="threadStatusUpdated"
    )
    is_thread_archived: Optional[bool] = Field(None, alias="isThreadArchived")
    is_thread_backlog: Optional[bool] = Field(None, alias="isThreadBacklog")
    is_thread_created: Optional[bool] = Field(None, alias="isThreadCreated")
    is_thread_deleted: Optional[bool] = Field(None, alias="isThreadDeleted")
    messages_updated: Optional[bool] = Field(None, alias="messagesUpdated")
    has_error_message: Optional[bool] = Field(None, alias="hasErrorMessage")
    thread_automation_id: Optional[str] = Field(None, alias="threadAutomationId")
    thread_name: Optional[str] = Field(None, alias="threadName")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ThreadChatModel(BaseModel):
    """Serialized execution attempt."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID = Field(..., alias="id")
    thread_id: UUID = Field(..., alias="threadId")
    status: ThreadStatus = Field(..., alias="status")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    schedule_at: Optional[datetime] = Field(None, alias="scheduleAt")
    reattempt_queue_at: Optional[datetime] = Field(None, alias="reattemptQueueAt")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class ThreadModel(BaseModel):
    """Serialized thread with its resolved status and board column."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID = Field(..., alias="id")
    user_id: str = Field(..., alias="userId")
    name: Optional[str] = Field(None, alias="name")
    github_repo_full_name: str = Field(..., alias="githubRepoFullName")
    github_pr_number: Optional[int] = Field(None, alias="githubPRNumber")
    pr_status: Optional[PullRequestStatus] = Field(None, alias="prStatus")
    pr_checks_status: Optional[PullRequestChecksStatus] = Field(
        None, alias="prChecksStatus"
    )
    automation_id: Optional[str] = Field(None, alias="automationId")
    parent_thread_id: Optional[UUID] = Field(None, alias="parentThreadId")
    archived: bool = Field(..., alias="archived")
    is_backlog: bool = Field(..., alias="isBacklog")
    version: int = Field(..., alias="version")
    status: ThreadStatus = Field(..., alias="status")
    combined_status: ThreadStatus = Field(..., alias="combinedStatus")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    schedule_at: Optional[datetime] = Field(None, alias="scheduleAt")
    reattempt_queue_at: Optional[datetime] = Field(None, alias="reattemptQueueAt")
    thread_chats: list[ThreadChatModel] = Field(
        default_factory=list, alias="threadChats"
    )
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class ThreadListResponse(BaseModel):
    """List endpoint response envelope."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[ThreadModel] = Field(default_factory=list, alias="items")


class BoardColumnModel(BaseModel):
    """One board column with the threads projected into it."""

    model_config = ConfigDict(populate_by_name=True)

    id: BoardColumn = Field(..., alias="id")
    title: str = Field(..., alias="title")
    description: str = Field(..., alias="description")
    threads: list[ThreadModel] = Field(default_factory=list, alias="threads")


class BoardResponse(BaseModel):
    """Board endpoint response envelope."""

    model_config = ConfigDict(populate_by_name=True)

    columns: list[BoardColumnModel] = Field(default_factory=list, alias="columns")


class CreateThreadRequest(BaseModel):
    """Request body for thread creation."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, alias="name")
    github_repo_full_name: str = Field(
        ..., alias="githubRepoFullName", min_length=3, pattern=r"^[^/\s]+/[^/\s]+$"
    )
    github_pr_number: Optional[int] = Field(None, alias="githubPRNumber", ge=1)
    automation_id: Optional[str] = Field(None, alias="automationId")
    parent_thread_id: Optional[UUID] = Field(None, alias="parentThreadId")
    is_backlog: bool = Field(False, alias="isBacklog")
    status: ThreadStatus = Field(ThreadStatus.QUEUED, alias="status")
    schedule_at: Optional[datetime] = Field(None, alias="scheduleAt")
    enable_thread_chats: bool = Field(True, alias="enableThreadChats")


class CreateThreadResponse(BaseModel):
    """Create endpoint response carrying the new identities."""

    model_config = ConfigDict(populate_by_name=True)

    thread_id: UUID = Field(..., alias="threadId")
    thread_chat_id: str = Field(..., alias="threadChatId")


class UpdateThreadRequest(BaseModel):
    """Request body for archive/backlog toggles."""

    model_config = ConfigDict(populate_by_name=True)

    archived: Optional[bool] = Field(None, alias="archived")
    is_backlog: Optional[bool] = Field(None, alias="isBacklog")


class AppendMessagesRequest(BaseModel):
    """Request body for appending chat content to an attempt."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[dict[str, Any]] = Field(..., alias="messages", min_length=1)


class TransitionRequest(BaseModel):
    """Request body for a compare-and-set status transition."""

    model_config = ConfigDict(populate_by_name=True)

    from_status: ThreadStatus = Field(..., alias="fromStatus")
    to_status: ThreadStatus = Field(..., alias="toStatus")
    reattempt_queue_at: Optional[datetime] = Field(None, alias="reattemptQueueAt")


class TransitionResponse(BaseModel):
    """Outcome of a guarded transition; ``applied`` is false on a lost race."""

    model_config = ConfigDict(populate_by_name=True)

    applied: bool = Field(..., alias="applied")


class QueuedAttemptModel(BaseModel):
    """One queued attempt eligible for promotion."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    thread_id: UUID = Field(..., alias="threadId")
    thread_chat_id: str = Field(..., alias="threadChatId")
    status: ThreadStatus = Field(..., alias="status")
    created_at: Optional[datetime] = Field(None, alias="createdAt")


class EligibleListResponse(BaseModel):
    """Eligible queued attempts, oldest first."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[QueuedAttemptModel] = Field(default_factory=list, alias="items")


class DequeueRequest(BaseModel):
    """Request body for a single promotion."""

    model_config = ConfigDict(populate_by_name=True)

    concurrency_limit_reached: bool = Field(False, alias="concurrencyLimitReached")
    sandbox_rate_limit_reached: bool = Field(False, alias="sandboxRateLimitReached")


class DequeuedAttemptModel(BaseModel):
    """The attempt promoted to ``queued`` and its prior status."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    thread_id: UUID = Field(..., alias="threadId")
    thread_chat_id: str = Field(..., alias="threadChatId")
    old_status: ThreadStatus = Field(..., alias="oldStatus")


class DequeueResponse(BaseModel):
    """Dequeue endpoint response envelope."""

    model_config = ConfigDict(populate_by_name=True)

    dequeued: Optional[DequeuedAttemptModel] = Field(None, alias="dequeued")


class PromoteRequest(BaseModel):
    """Request body for capacity-sized promotion."""

    model_config = ConfigDict(populate_by_name=True)

    available_slots: Optional[int] = Field(None, alias="availableSlots", ge=0)
    sandbox_rate_limit_reached: bool = Field(False, alias="sandboxRateLimitReached")


class PromoteResponse(BaseModel):
    """Attempts promoted by one capacity-sized sweep."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[DequeuedAttemptModel] = Field(default_factory=list, alias="items")


class QueueSnapshotModel(BaseModel):
    """Queue depth and active-thread usage for one user."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    queued_total: int = Field(..., alias="queuedTotal")
    queued_tasks_concurrency: int = Field(..., alias="queuedTasksConcurrency")
    queued_agent_rate_limit: int = Field(..., alias="queuedAgentRateLimit")
    queued_sandbox_creation_rate_limit: int = Field(
        ..., alias="queuedSandboxCreationRateLimit"
    )
    active_threads: int = Field(..., alias="activeThreads")
    max_concurrent_threads: int = Field(..., alias="maxConcurrentThreads")


class ShouldRefetchRequest(BaseModel):
    """Inputs of the refetch predicate evaluated for a thin client."""

    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(..., alias="threadId")
    event: BroadcastThreadData = Field(..., alias="event")
    known_thread_ids: list[str] = Field(default_factory=list, alias="knownThreadIds")
    archived: bool = Field(False, alias="archived")
    automation_id: Optional[str] = Field(None, alias="automationId")


class ShouldRefetchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    should_refetch: bool = Field(..., alias="shouldRefetch")
