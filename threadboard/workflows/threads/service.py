"""Service layer for thread lifecycle operations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional, Sequence, Union
from uuid import UUID

from threadboard.config.settings import settings
from threadboard.schemas.thread_models import BroadcastThreadData
from threadboard.workflows.threads import models
from threadboard.workflows.threads.board import BoardColumn, group_threads_by_column
from threadboard.workflows.threads.broadcast import BroadcastPublisher, NullBroadcaster
from threadboard.workflows.threads.notifications import ThreadListFilters
from threadboard.workflows.threads.repositories import (
    UNSET,
    QueuedAttempt,
    ScheduledAttempt,
    StalledAttempt,
    ThreadRepository,
    Unset,
)
from threadboard.workflows.threads.status import (
    LEGACY_THREAD_CHAT_ID,
    ThreadStatus,
    parse_thread_chat_id,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_ERROR = "request-timeout"


class ThreadLifecycleValidationError(ValueError):
    """Raised when client-supplied identities or arguments are invalid."""


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Outcome of a guarded transition.

    ``applied`` is ``False`` when the stored status no longer matched the
    expected prior status, or when the attempt is unknown to the caller.
    """

    applied: bool
    combined_status: Optional[ThreadStatus] = None


@dataclass(frozen=True, slots=True)
class DequeuedAttempt:
    """An attempt promoted to ``queued`` and the status it was promoted from."""

    thread_id: UUID
    thread_chat_id: str
    old_status: ThreadStatus


@dataclass(frozen=True, slots=True)
class QueueSnapshot:
    queued_total: int
    queued_tasks_concurrency: int
    queued_agent_rate_limit: int
    queued_sandbox_creation_rate_limit: int
    active_threads: int
    max_concurrent_threads: int


class ThreadLifecycleService:
    """Application service coordinating guarded writes and their broadcasts."""

    def __init__(
        self,
        repository: ThreadRepository,
        *,
        broadcaster: BroadcastPublisher | None = None,
        max_concurrent_threads: int | None = None,
    ) -> None:
        self._repository = repository
        self._broadcaster = broadcaster or NullBroadcaster()
        configured = (
            max_concurrent_threads
            if max_concurrent_threads is not None
            else settings.thread_queue.max_concurrent_threads
        )
        self._max_concurrent_threads = max(1, int(configured))

    @property
    def max_concurrent_threads(self) -> int:
        return self._max_concurrent_threads

    async def _publish(self, user_id: str, **fields: Any) -> None:
        await self._broadcaster.publish(user_id, BroadcastThreadData(**fields))

    @staticmethod
    def _normalize_chat_id(thread_chat_id: UUID | str) -> str:
        try:
            chat_uuid = parse_thread_chat_id(thread_chat_id)
        except ValueError as exc:
            raise ThreadLifecycleValidationError(
                f"threadChatId must be a UUID or {LEGACY_THREAD_CHAT_ID!r}"
            ) from exc
        return LEGACY_THREAD_CHAT_ID if chat_uuid is None else str(chat_uuid)

    # ------------------------------------------------------------------
    # Transition guard and dequeue
    # ------------------------------------------------------------------

    async def transition(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        thread_chat_id: UUID | str,
        from_status: ThreadStatus,
        to_status: ThreadStatus,
        reattempt_queue_at: Union[datetime, None, Unset] = UNSET,
    ) -> TransitionResult:
        """Move one attempt from ``from_status`` to ``to_status`` if still there."""

        chat_id = self._normalize_chat_id(thread_chat_id)
        applied = await self._repository.transition_status(
            user_id=user_id,
            thread_id=thread_id,
            thread_chat_id=chat_id,
            from_status=from_status,
            to_status=to_status,
            reattempt_queue_at=reattempt_queue_at,
        )
        if not applied:
            logger.debug(
                "Thread transition not applied",
                extra={
                    "user_id": user_id,
                    "thread_id": str(thread_id),
                    "thread_chat_id": chat_id,
                    "from_status": ThreadStatus(from_status).value,
                    "to_status": ThreadStatus(to_status).value,
                },
            )
            return TransitionResult(applied=False)

        await self._repository.commit()
        combined = await self._repository.get_combined_status(thread_id)
        logger.info(
            "Thread transition applied",
            extra={
                "user_id": user_id,
                "thread_id": str(thread_id),
                "thread_chat_id": chat_id,
                "from_status": ThreadStatus(from_status).value,
                "to_status": ThreadStatus(to_status).value,
            },
        )
        await self._publish(
            user_id,
            thread_id=str(thread_id),
            thread_chat_id=chat_id,
            thread_status_updated=combined or ThreadStatus(to_status),
        )
        return TransitionResult(applied=True, combined_status=combined)

    async def eligible(
        self,
        *,
        user_id: str,
        concurrency_limit_reached: bool,
        sandbox_rate_limit_reached: bool,
        now: Optional[datetime] = None,
    ) -> list[QueuedAttempt]:
        """Return queued attempts the capacity flags allow to be promoted."""

        return await self._repository.get_eligible_queued_attempts(
            user_id=user_id,
            concurrency_limit_reached=concurrency_limit_reached,
            sandbox_rate_limit_reached=sandbox_rate_limit_reached,
            now=now,
        )

    async def dequeue_one(
        self, *, user_id: str, eligible: Sequence[QueuedAttempt]
    ) -> Optional[DequeuedAttempt]:
        """Promote the first candidate whose guarded transition succeeds.

        Stops after one promotion; candidates lost to a concurrent caller are
        skipped. Returns ``None`` when every candidate was lost.
        """

        for candidate in eligible:
            result = await self.transition(
                user_id=user_id,
                thread_id=candidate.thread_id,
                thread_chat_id=candidate.thread_chat_id,
                from_status=candidate.status,
                to_status=ThreadStatus.QUEUED,
            )
            if result.applied:
                return DequeuedAttempt(
                    thread_id=candidate.thread_id,
                    thread_chat_id=candidate.thread_chat_id,
                    old_status=ThreadStatus(candidate.status),
                )
        if eligible:
            logger.debug(
                "No eligible thread could be dequeued",
                extra={"user_id": user_id, "candidates": len(eligible)},
            )
        return None

    async def promote_queued(
        self,
        *,
        user_id: str,
        available_slots: Optional[int] = None,
        sandbox_rate_limit_reached: bool = False,
        now: Optional[datetime] = None,
    ) -> list[DequeuedAttempt]:
        """Promote queued attempts, rescanning between promotions.

        Each promotion uses one free slot. Once the slots are used up the scan
        runs with the concurrency limit reached, so attempts whose agent
        backoff elapsed (and sandbox-limited attempts, unless that limit is
        flagged) are still promoted. When ``available_slots`` is omitted it is
        the configured cap minus the user's active (booting or working)
        threads, floored at zero.
        """

        if available_slots is None:
            active = await self._repository.get_active_thread_count(user_id=user_id)
            available_slots = max(0, self._max_concurrent_threads - active)
        elif available_slots < 0:
            raise ThreadLifecycleValidationError("available_slots must be >= 0")

        promoted: list[DequeuedAttempt] = []
        while True:
            candidates = await self.eligible(
                user_id=user_id,
                concurrency_limit_reached=len(promoted) >= available_slots,
                sandbox_rate_limit_reached=sandbox_rate_limit_reached,
                now=now,
            )
            dequeued = await self.dequeue_one(user_id=user_id, eligible=candidates)
            if dequeued is None:
                break
            promoted.append(dequeued)

        if promoted:
            logger.info(
                "Promoted queued threads",
                extra={"user_id": user_id, "promoted": len(promoted)},
            )
        return promoted

    # ------------------------------------------------------------------
    # Thread writes
    # ------------------------------------------------------------------

    async def create_thread(
        self,
        *,
        user_id: str,
        github_repo_full_name: str,
        name: Optional[str] = None,
        github_pr_number: Optional[int] = None,
        automation_id: Optional[str] = None,
        parent_thread_id: Optional[UUID] = None,
        is_backlog: bool = False,
        status: ThreadStatus = ThreadStatus.QUEUED,
        schedule_at: Optional[datetime] = None,
        enable_thread_chats: bool = True,
    ) -> tuple[models.Thread, str]:
        """Create a thread with its first attempt and announce it."""

        if status == ThreadStatus.SCHEDULED and schedule_at is None:
            raise ThreadLifecycleValidationError(
                "scheduleAt is required for scheduled threads"
            )
        if parent_thread_id is not None:
            await self._repository.require_thread(parent_thread_id, user_id=user_id)

        thread, thread_chat_id = await self._repository.create_thread(
            user_id=user_id,
            github_repo_full_name=github_repo_full_name,
            name=name,
            github_pr_number=github_pr_number,
            automation_id=automation_id,
            parent_thread_id=parent_thread_id,
            is_backlog=is_backlog,
            status=status,
            schedule_at=schedule_at,
            enable_thread_chats=enable_thread_chats,
        )
        await self._repository.commit()
        logger.info(
            "Created thread",
            extra={
                "user_id": user_id,
                "thread_id": str(thread.id),
                "thread_chat_id": thread_chat_id,
                "status": ThreadStatus(status).value,
            },
        )

        await self._publish(
            user_id,
            thread_id=str(thread.id),
            thread_chat_id=thread_chat_id,
            is_thread_created=True,
            thread_automation_id=automation_id,
        )
        if parent_thread_id is not None:
            await self._publish(user_id, thread_id=str(parent_thread_id))
        return thread, thread_chat_id

    async def create_thread_chat(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        status: ThreadStatus = ThreadStatus.QUEUED,
        schedule_at: Optional[datetime] = None,
    ) -> models.ThreadChat:
        """Start another attempt on an existing multi-attempt thread."""

        chat = await self._repository.create_thread_chat(
            user_id=user_id,
            thread_id=thread_id,
            status=status,
            schedule_at=schedule_at,
        )
        await self._repository.commit()
        combined = await self._repository.get_combined_status(thread_id)
        await self._publish(
            user_id,
            thread_id=str(thread_id),
            thread_chat_id=str(chat.id),
            thread_status_updated=combined,
        )
        return chat

    async def update_thread(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        archived: Optional[bool] = None,
        is_backlog: Optional[bool] = None,
        name: Optional[str] = None,
    ) -> models.Thread:
        """Toggle view flags or rename a thread; status is never written here."""

        thread = await self._repository.update_thread(
            user_id=user_id,
            thread_id=thread_id,
            archived=archived,
            is_backlog=is_backlog,
            name=name,
        )
        await self._repository.commit()
        await self._publish(
            user_id,
            thread_id=str(thread_id),
            is_thread_archived=archived,
            is_thread_backlog=is_backlog,
            thread_name=name,
            thread_automation_id=thread.automation_id,
        )
        return thread

    async def set_archived(
        self, *, user_id: str, thread_id: UUID, archived: bool
    ) -> models.Thread:
        return await self.update_thread(
            user_id=user_id, thread_id=thread_id, archived=archived
        )

    async def set_backlog(
        self, *, user_id: str, thread_id: UUID, is_backlog: bool
    ) -> models.Thread:
        return await self.update_thread(
            user_id=user_id, thread_id=thread_id, is_backlog=is_backlog
        )

    async def append_messages(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        thread_chat_id: UUID | str,
        messages: Sequence[dict[str, Any]],
    ) -> None:
        if not messages:
            raise ThreadLifecycleValidationError("messages must not be empty")
        chat_id = self._normalize_chat_id(thread_chat_id)
        await self._repository.update_thread_chat(
            user_id=user_id,
            thread_id=thread_id,
            thread_chat_id=chat_id,
            append_messages=messages,
        )
        await self._repository.commit()
        await self._publish(
            user_id,
            thread_id=str(thread_id),
            thread_chat_id=chat_id,
            messages_updated=True,
        )

    async def record_error(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        thread_chat_id: UUID | str,
        error_message: Optional[str],
    ) -> None:
        """Store (or clear, with ``None``) the error message of an attempt."""

        chat_id = self._normalize_chat_id(thread_chat_id)
        await self._repository.update_thread_chat(
            user_id=user_id,
            thread_id=thread_id,
            thread_chat_id=chat_id,
            error_message=error_message,
        )
        await self._repository.commit()
        await self._publish(
            user_id,
            thread_id=str(thread_id),
            thread_chat_id=chat_id,
            has_error_message=error_message is not None,
        )

    async def delete_thread(self, *, user_id: str, thread_id: UUID) -> None:
        thread = await self._repository.delete_thread(
            user_id=user_id, thread_id=thread_id
        )
        automation_id = thread.automation_id
        await self._repository.commit()
        logger.info(
            "Deleted thread",
            extra={"user_id": user_id, "thread_id": str(thread_id)},
        )
        await self._publish(
            user_id,
            thread_id=str(thread_id),
            is_thread_deleted=True,
            thread_automation_id=automation_id,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_thread(self, *, user_id: str, thread_id: UUID) -> models.Thread:
        return await self._repository.require_thread(thread_id, user_id=user_id)

    async def list_threads(
        self,
        *,
        user_id: str,
        filters: Optional[ThreadListFilters] = None,
        limit: int = 100,
    ) -> list[models.Thread]:
        if limit < 1 or limit > 500:
            raise ThreadLifecycleValidationError("limit must be between 1 and 500")
        return await self._repository.list_threads(
            user_id=user_id, filters=filters, limit=limit
        )

    async def get_board(
        self,
        *,
        user_id: str,
        filters: Optional[ThreadListFilters] = None,
        limit: int = 100,
    ) -> dict[BoardColumn, list[models.Thread]]:
        """Return the user's threads grouped into board columns."""

        threads = await self.list_threads(user_id=user_id, filters=filters, limit=limit)
        return group_threads_by_column(threads)

    async def get_queue_snapshot(self, *, user_id: str) -> QueueSnapshot:
        counts = await self._repository.get_queued_counts(user_id=user_id)
        active = await self._repository.get_active_thread_count(user_id=user_id)
        return QueueSnapshot(
            queued_total=counts.queued_total,
            queued_tasks_concurrency=counts.queued_tasks_concurrency,
            queued_agent_rate_limit=counts.queued_agent_rate_limit,
            queued_sandbox_creation_rate_limit=(
                counts.queued_sandbox_creation_rate_limit
            ),
            active_threads=active,
            max_concurrent_threads=self._max_concurrent_threads,
        )

    # ------------------------------------------------------------------
    # Periodic sweeps
    # ------------------------------------------------------------------

    async def process_ready_queues(
        self, *, now: Optional[datetime] = None
    ) -> dict[str, list[DequeuedAttempt]]:
        """Promote work for users whose backoff elapsed or whose queue is stuck."""

        now = now or datetime.now(UTC)
        ready = await self._repository.get_user_ids_ready_to_process(now=now)
        stuck = await self._repository.get_user_ids_stuck_in_queue()

        promoted: dict[str, list[DequeuedAttempt]] = {}
        for user_id in sorted({*ready, *stuck}):
            dequeued = await self.promote_queued(user_id=user_id, now=now)
            if dequeued:
                promoted[user_id] = dequeued
        return promoted

    async def run_scheduled_due(
        self, *, now: Optional[datetime] = None
    ) -> list[ScheduledAttempt]:
        """Release scheduled attempts whose start time has passed."""

        due = await self._repository.get_scheduled_attempts_due(now=now)
        started: list[ScheduledAttempt] = []
        for attempt in due:
            result = await self.transition(
                user_id=attempt.user_id,
                thread_id=attempt.thread_id,
                thread_chat_id=attempt.thread_chat_id,
                from_status=ThreadStatus.SCHEDULED,
                to_status=ThreadStatus.QUEUED,
            )
            if result.applied:
                started.append(attempt)
        if started:
            logger.info("Released scheduled threads", extra={"count": len(started)})
        return started

    async def stop_stalled(
        self,
        *,
        cutoff_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[StalledAttempt]:
        """Complete attempts stuck in an execution status past the cutoff."""

        cutoff = (
            cutoff_seconds
            if cutoff_seconds is not None
            else settings.thread_queue.stalled_cutoff_seconds
        )
        stalled = await self._repository.get_stalled_attempts(
            cutoff_seconds=cutoff, now=now
        )
        stopped: list[StalledAttempt] = []
        for attempt in stalled:
            result = await self.transition(
                user_id=attempt.user_id,
                thread_id=attempt.thread_id,
                thread_chat_id=attempt.thread_chat_id,
                from_status=attempt.status,
                to_status=ThreadStatus.COMPLETE,
            )
            if not result.applied:
                continue
            await self.record_error(
                user_id=attempt.user_id,
                thread_id=attempt.thread_id,
                thread_chat_id=attempt.thread_chat_id,
                error_message=REQUEST_TIMEOUT_ERROR,
            )
            stopped.append(attempt)
        if stopped:
            logger.warning(
                "Stopped stalled threads",
                extra={"count": len(stopped), "cutoff_seconds": cutoff},
            )
        return stopped


__all__ = [
    "DequeuedAttempt",
    "QueueSnapshot",
    "REQUEST_TIMEOUT_ERROR",
    "ThreadLifecycleService",
    "ThreadLifecycleValidationError",
    "TransitionResult",
]
