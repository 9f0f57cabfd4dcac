"""Repository helpers for thread lifecycle persistence."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional, Sequence, Union
from uuid import UUID, uuid4

from sqlalchemy import Select, and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from threadboard.workflows.threads import models
from threadboard.workflows.threads.notifications import ThreadListFilters
from threadboard.workflows.threads.status import (
    ACTIVE_STATUSES,
    LEGACY_THREAD_CHAT_ID,
    RATE_LIMITED_STATUSES,
    STALLABLE_STATUSES,
    ThreadStatus,
    combined_status,
    parse_thread_chat_id,
)


class Unset(enum.Enum):
    UNSET = "unset"


UNSET = Unset.UNSET
"""Marker for "leave this column as it is" in optional update arguments."""


class ThreadRepositoryError(Exception):
    """Base class for thread repository errors."""


class ThreadNotFoundError(ThreadRepositoryError):
    """Raised when a thread does not exist or is not owned by the caller."""

    def __init__(self, thread_id: UUID) -> None:
        super().__init__(f"Thread {thread_id} was not found")
        self.thread_id = thread_id


class ThreadChatNotFoundError(ThreadRepositoryError):
    """Raised when a thread chat does not exist or is not owned by the caller."""

    def __init__(self, thread_id: UUID, thread_chat_id: UUID | str) -> None:
        super().__init__(f"Thread chat {thread_chat_id} of {thread_id} was not found")
        self.thread_id = thread_id
        self.thread_chat_id = thread_chat_id


class ThreadVersionError(ThreadRepositoryError):
    """Raised when a legacy single-attempt thread is asked for a new chat."""


@dataclass(frozen=True, slots=True)
class QueuedAttempt:
    """Identity and status of one attempt found by a queue scan."""

    thread_id: UUID
    thread_chat_id: str
    status: ThreadStatus
    created_at: datetime


@dataclass(frozen=True, slots=True)
class ScheduledAttempt:
    user_id: str
    thread_id: UUID
    thread_chat_id: str
    schedule_at: datetime


@dataclass(frozen=True, slots=True)
class StalledAttempt:
    user_id: str
    thread_id: UUID
    thread_chat_id: str
    status: ThreadStatus
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class QueuedThreadCounts:
    """Queued thread totals for one user; each thread is counted once."""

    queued_total: int = 0
    queued_tasks_concurrency: int = 0
    queued_agent_rate_limit: int = 0
    queued_sandbox_creation_rate_limit: int = 0


class ThreadRepository:
    """CRUD, guarded transitions and queue scans for threads and chats."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        """Persist transaction changes."""

        await self._session.commit()

    # ------------------------------------------------------------------
    # Threads and chats
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
        """Create a thread and its first attempt.

        With chats enabled the thread is ``version=1`` and the attempt is a
        ``ThreadChat`` row; otherwise the status lives on the thread row.
        Returns the thread and the attempt's ``threadChatId``.
        """

        thread_id = uuid4()
        status = ThreadStatus(status)
        common: dict[str, Any] = dict(
            id=thread_id,
            user_id=user_id,
            name=name,
            github_repo_full_name=github_repo_full_name,
            github_pr_number=github_pr_number,
            automation_id=automation_id,
            parent_thread_id=parent_thread_id,
            archived=False,
            is_backlog=is_backlog,
            messages=[],
        )
        if enable_thread_chats:
            chat = models.ThreadChat(
                id=uuid4(),
                user_id=user_id,
                thread_id=thread_id,
                status=status,
                schedule_at=schedule_at,
                messages=[],
            )
            thread = models.Thread(**common, version=1, thread_chats=[chat])
            thread_chat_id = str(chat.id)
        else:
            thread = models.Thread(
                **common,
                version=0,
                status=status,
                schedule_at=schedule_at,
                thread_chats=[],
            )
            thread_chat_id = LEGACY_THREAD_CHAT_ID

        self._session.add(thread)
        await self._session.flush()
        return thread, thread_chat_id

    async def create_thread_chat(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        status: ThreadStatus = ThreadStatus.QUEUED,
        schedule_at: Optional[datetime] = None,
    ) -> models.ThreadChat:
        """Append a new execution attempt to a multi-attempt thread."""

        thread = await self.require_thread(thread_id, user_id=user_id)
        if thread.version == 0:
            raise ThreadVersionError(
                f"Thread {thread_id} stores a single legacy attempt"
            )
        chat = models.ThreadChat(
            id=uuid4(),
            user_id=user_id,
            thread_id=thread_id,
            status=ThreadStatus(status),
            schedule_at=schedule_at,
            messages=[],
        )
        thread.thread_chats.append(chat)
        await self._session.flush()
        return chat

    async def get_thread(
        self, thread_id: UUID, *, user_id: Optional[str] = None
    ) -> Optional[models.Thread]:
        """Return a thread by id, optionally scoped to its owner."""

        stmt: Select[tuple[models.Thread]] = select(models.Thread).where(
            models.Thread.id == thread_id
        )
        if user_id is not None:
            stmt = stmt.where(models.Thread.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def require_thread(
        self, thread_id: UUID, *, user_id: Optional[str] = None
    ) -> models.Thread:
        """Return an existing thread or raise ``ThreadNotFoundError``."""

        thread = await self.get_thread(thread_id, user_id=user_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        return thread

    async def list_threads(
        self,
        *,
        user_id: str,
        filters: Optional[ThreadListFilters] = None,
        limit: int = 100,
    ) -> list[models.Thread]:
        """Return a user's threads, most recently updated first."""

        if limit < 1:
            raise ValueError("limit must be at least 1")

        stmt: Select[tuple[models.Thread]] = select(models.Thread).where(
            models.Thread.user_id == user_id
        )
        if filters is not None:
            if filters.archived is not None:
                stmt = stmt.where(models.Thread.archived == filters.archived)
            if filters.is_backlog is not None:
                stmt = stmt.where(models.Thread.is_backlog == filters.is_backlog)
            if filters.automation_id is not None:
                stmt = stmt.where(models.Thread.automation_id == filters.automation_id)

        stmt = stmt.order_by(
            models.Thread.updated_at.desc(),
            models.Thread.id.desc(),
        ).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_thread(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        archived: Optional[bool] = None,
        is_backlog: Optional[bool] = None,
        name: Optional[str] = None,
        github_pr_number: Optional[int] = None,
        pr_status: Optional[models.PullRequestStatus] = None,
        pr_checks_status: Optional[models.PullRequestChecksStatus] = None,
    ) -> models.Thread:
        """Update thread-level flags and association fields (never status)."""

        thread = await self.require_thread(thread_id, user_id=user_id)
        if archived is not None:
            thread.archived = archived
        if is_backlog is not None:
            thread.is_backlog = is_backlog
        if name is not None:
            thread.name = name
        if github_pr_number is not None:
            thread.github_pr_number = github_pr_number
        if pr_status is not None:
            thread.pr_status = pr_status
        if pr_checks_status is not None:
            thread.pr_checks_status = pr_checks_status
        thread.updated_at = datetime.now(UTC)
        await self._session.flush()
        return thread

    async def update_thread_chat(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        thread_chat_id: UUID | str,
        append_messages: Optional[Sequence[dict[str, Any]]] = None,
        error_message: Union[str, None, Unset] = UNSET,
    ) -> None:
        """Apply content updates to one attempt; status is not writable here."""

        chat_uuid = parse_thread_chat_id(thread_chat_id)
        target: models.Thread | models.ThreadChat | None
        if chat_uuid is None:
            target = await self.get_thread(thread_id, user_id=user_id)
        else:
            result = await self._session.execute(
                select(models.ThreadChat).where(
                    models.ThreadChat.id == chat_uuid,
                    models.ThreadChat.thread_id == thread_id,
                    models.ThreadChat.user_id == user_id,
                )
            )
            target = result.scalars().first()
        if target is None:
            raise ThreadChatNotFoundError(thread_id, thread_chat_id)

        if append_messages:
            target.messages = [*(target.messages or []), *append_messages]
        if error_message is not UNSET:
            target.error_message = error_message
        target.updated_at = datetime.now(UTC)
        await self._session.flush()

    async def delete_thread(self, *, user_id: str, thread_id: UUID) -> models.Thread:
        """Hard-delete a thread; its chats are removed with it."""

        thread = await self.require_thread(thread_id, user_id=user_id)
        await self._session.delete(thread)
        await self._session.flush()
        return thread

    # ------------------------------------------------------------------
    # Guarded status transitions
    # ------------------------------------------------------------------

    async def transition_status(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        thread_chat_id: UUID | str,
        from_status: ThreadStatus,
        to_status: ThreadStatus,
        reattempt_queue_at: Union[datetime, None, Unset] = UNSET,
    ) -> bool:
        """Set ``to_status`` only where the stored status equals ``from_status``.

        Sent as one conditional UPDATE; returns whether exactly one row
        changed. An unknown or foreign identity reads the same as a lost
        race.
        """

        from_status = ThreadStatus(from_status)
        to_status = ThreadStatus(to_status)
        values: dict[str, Any] = {
            "status": to_status,
            "updated_at": datetime.now(UTC),
        }
        if to_status not in RATE_LIMITED_STATUSES:
            values["reattempt_queue_at"] = None
        elif reattempt_queue_at is not UNSET:
            values["reattempt_queue_at"] = reattempt_queue_at

        chat_uuid = parse_thread_chat_id(thread_chat_id)
        if chat_uuid is None:
            stmt = (
                update(models.Thread)
                .where(
                    models.Thread.id == thread_id,
                    models.Thread.user_id == user_id,
                    models.Thread.version == 0,
                    models.Thread.status == from_status,
                )
                .values(**values)
            )
        else:
            stmt = (
                update(models.ThreadChat)
                .where(
                    models.ThreadChat.id == chat_uuid,
                    models.ThreadChat.thread_id == thread_id,
                    models.ThreadChat.user_id == user_id,
                    models.ThreadChat.status == from_status,
                )
                .values(**values)
            )
        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_combined_status(self, thread_id: UUID) -> Optional[ThreadStatus]:
        """Resolve the thread-level status from its attempts' stored statuses."""

        result = await self._session.execute(
            select(models.Thread.version, models.Thread.status).where(
                models.Thread.id == thread_id
            )
        )
        row = result.first()
        if row is None:
            return None
        version, legacy_status = row
        if version == 0:
            return combined_status([legacy_status])

        chat_result = await self._session.execute(
            select(models.ThreadChat.status).where(
                models.ThreadChat.thread_id == thread_id
            )
        )
        return combined_status(chat_result.scalars().all())

    # ------------------------------------------------------------------
    # Queue scans (read-only)
    # ------------------------------------------------------------------

    async def get_eligible_queued_attempts(
        self,
        *,
        user_id: str,
        concurrency_limit_reached: bool,
        sandbox_rate_limit_reached: bool,
        now: Optional[datetime] = None,
    ) -> list[QueuedAttempt]:
        """Return backpressured attempts allowed to be promoted, oldest first.

        Agent rate-limit backoff is time based and never gated by the capacity
        flags; the other two queued statuses are gated by their flag.
        """

        now = now or datetime.now(UTC)

        def _conditions(model: Any) -> Any:
            clauses = [
                and_(
                    model.status == ThreadStatus.QUEUED_AGENT_RATE_LIMIT,
                    model.reattempt_queue_at <= now,
                )
            ]
            if not sandbox_rate_limit_reached:
                clauses.append(
                    model.status == ThreadStatus.QUEUED_SANDBOX_CREATION_RATE_LIMIT
                )
            if not concurrency_limit_reached:
                clauses.append(model.status == ThreadStatus.QUEUED_TASKS_CONCURRENCY)
            return or_(*clauses)

        legacy_result = await self._session.execute(
            select(models.Thread.id, models.Thread.status, models.Thread.created_at)
            .where(
                models.Thread.user_id == user_id,
                models.Thread.version == 0,
                _conditions(models.Thread),
            )
            .order_by(models.Thread.created_at.asc(), models.Thread.id.asc())
        )
        chat_result = await self._session.execute(
            select(
                models.ThreadChat.thread_id,
                models.ThreadChat.id,
                models.ThreadChat.status,
                models.ThreadChat.created_at,
            )
            .where(
                models.ThreadChat.user_id == user_id,
                _conditions(models.ThreadChat),
            )
            .order_by(models.ThreadChat.created_at.asc(), models.ThreadChat.id.asc())
        )

        candidates = [
            QueuedAttempt(
                thread_id=thread_id,
                thread_chat_id=LEGACY_THREAD_CHAT_ID,
                status=status,
                created_at=created_at,
            )
            for thread_id, status, created_at in legacy_result.all()
        ]
        candidates.extend(
            QueuedAttempt(
                thread_id=thread_id,
                thread_chat_id=str(chat_id),
                status=status,
                created_at=created_at,
            )
            for thread_id, chat_id, status, created_at in chat_result.all()
        )
        # One FIFO across both row shapes; sort is stable for equal timestamps.
        candidates.sort(key=lambda attempt: attempt.created_at)
        return candidates

    async def get_queued_counts(self, *, user_id: str) -> QueuedThreadCounts:
        """Count queued threads per backpressure status, one entry per thread."""

        statuses = (
            ThreadStatus.QUEUED_TASKS_CONCURRENCY,
            ThreadStatus.QUEUED_AGENT_RATE_LIMIT,
            ThreadStatus.QUEUED_SANDBOX_CREATION_RATE_LIMIT,
        )
        legacy_result = await self._session.execute(
            select(models.Thread.id, models.Thread.status, models.Thread.created_at)
            .where(
                models.Thread.user_id == user_id,
                models.Thread.version == 0,
                models.Thread.status.in_(statuses),
            )
            .order_by(models.Thread.created_at.asc())
        )
        chat_result = await self._session.execute(
            select(
                models.ThreadChat.thread_id,
                models.ThreadChat.status,
                models.ThreadChat.created_at,
            )
            .where(
                models.ThreadChat.user_id == user_id,
                models.ThreadChat.status.in_(statuses),
            )
            .order_by(models.ThreadChat.created_at.asc())
        )
        rows = [*legacy_result.all(), *chat_result.all()]
        rows.sort(key=lambda row: row[2])

        counts = {status: 0 for status in statuses}
        seen: set[UUID] = set()
        for thread_id, status, _created_at in rows:
            if thread_id in seen:
                continue
            seen.add(thread_id)
            counts[status] += 1

        return QueuedThreadCounts(
            queued_total=len(seen),
            queued_tasks_concurrency=counts[ThreadStatus.QUEUED_TASKS_CONCURRENCY],
            queued_agent_rate_limit=counts[ThreadStatus.QUEUED_AGENT_RATE_LIMIT],
            queued_sandbox_creation_rate_limit=counts[
                ThreadStatus.QUEUED_SANDBOX_CREATION_RATE_LIMIT
            ],
        )

    async def get_active_thread_count(self, *, user_id: str) -> int:
        """Count distinct threads with an attempt that is booting or working."""

        legacy_result = await self._session.execute(
            select(models.Thread.id).where(
                models.Thread.user_id == user_id,
                models.Thread.version == 0,
                models.Thread.status.in_(ACTIVE_STATUSES),
            )
        )
        chat_result = await self._session.execute(
            select(models.ThreadChat.thread_id)
            .where(
                models.ThreadChat.user_id == user_id,
                models.ThreadChat.status.in_(ACTIVE_STATUSES),
            )
            .distinct()
        )
        return len({*legacy_result.scalars().all(), *chat_result.scalars().all()})

    async def get_user_ids_ready_to_process(
        self, *, now: Optional[datetime] = None
    ) -> list[str]:
        """Users owning a rate-limited attempt whose backoff has elapsed."""

        now = now or datetime.now(UTC)
        legacy_result = await self._session.execute(
            select(models.Thread.user_id)
            .where(
                models.Thread.version == 0,
                models.Thread.status.in_(RATE_LIMITED_STATUSES),
                or_(
                    models.Thread.reattempt_queue_at.is_(None),
                    models.Thread.reattempt_queue_at <= now,
                ),
            )
            .distinct()
        )
        chat_result = await self._session.execute(
            select(models.ThreadChat.user_id)
            .where(
                models.ThreadChat.status.in_(RATE_LIMITED_STATUSES),
                or_(
                    models.ThreadChat.reattempt_queue_at.is_(None),
                    models.ThreadChat.reattempt_queue_at <= now,
                ),
            )
            .distinct()
        )
        return sorted({*legacy_result.scalars().all(), *chat_result.scalars().all()})

    async def get_user_ids_stuck_in_queue(self) -> list[str]:
        """Users with concurrency-queued attempts but nothing booting or working."""

        queued_legacy = await self._session.execute(
            select(models.Thread.user_id)
            .where(
                models.Thread.version == 0,
                models.Thread.status == ThreadStatus.QUEUED_TASKS_CONCURRENCY,
            )
            .distinct()
        )
        queued_chats = await self._session.execute(
            select(models.ThreadChat.user_id)
            .where(models.ThreadChat.status == ThreadStatus.QUEUED_TASKS_CONCURRENCY)
            .distinct()
        )
        user_ids = {*queued_legacy.scalars().all(), *queued_chats.scalars().all()}
        if not user_ids:
            return []

        active_legacy = await self._session.execute(
            select(models.Thread.user_id)
            .where(
                models.Thread.user_id.in_(user_ids),
                models.Thread.version == 0,
                models.Thread.status.in_(ACTIVE_STATUSES),
            )
            .distinct()
        )
        active_chats = await self._session.execute(
            select(models.ThreadChat.user_id)
            .where(
                models.ThreadChat.user_id.in_(user_ids),
                models.ThreadChat.status.in_(ACTIVE_STATUSES),
            )
            .distinct()
        )
        active = {*active_legacy.scalars().all(), *active_chats.scalars().all()}
        return sorted(user_ids - active)

    async def get_scheduled_attempts_due(
        self, *, now: Optional[datetime] = None
    ) -> list[ScheduledAttempt]:
        """Scheduled attempts whose start time has passed, earliest first."""

        now = now or datetime.now(UTC)
        legacy_result = await self._session.execute(
            select(
                models.Thread.user_id,
                models.Thread.id,
                models.Thread.schedule_at,
            ).where(
                models.Thread.version == 0,
                models.Thread.status == ThreadStatus.SCHEDULED,
                models.Thread.schedule_at <= now,
            )
        )
        chat_result = await self._session.execute(
            select(
                models.ThreadChat.user_id,
                models.ThreadChat.thread_id,
                models.ThreadChat.id,
                models.ThreadChat.schedule_at,
            ).where(
                models.ThreadChat.status == ThreadStatus.SCHEDULED,
                models.ThreadChat.schedule_at <= now,
            )
        )
        due = [
            ScheduledAttempt(
                user_id=user_id,
                thread_id=thread_id,
                thread_chat_id=LEGACY_THREAD_CHAT_ID,
                schedule_at=schedule_at,
            )
            for user_id, thread_id, schedule_at in legacy_result.all()
        ]
        due.extend(
            ScheduledAttempt(
                user_id=user_id,
                thread_id=thread_id,
                thread_chat_id=str(chat_id),
                schedule_at=schedule_at,
            )
            for user_id, thread_id, chat_id, schedule_at in chat_result.all()
        )
        due.sort(key=lambda attempt: attempt.schedule_at)
        return due

    async def get_stalled_attempts(
        self,
        *,
        cutoff_seconds: int,
        now: Optional[datetime] = None,
    ) -> list[StalledAttempt]:
        """Attempts stuck in an execution status past the cutoff, stalest first."""

        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=cutoff_seconds)
        legacy_result = await self._session.execute(
            select(
                models.Thread.user_id,
                models.Thread.id,
                models.Thread.status,
                models.Thread.updated_at,
            ).where(
                models.Thread.version == 0,
                models.Thread.status.in_(STALLABLE_STATUSES),
                models.Thread.updated_at <= cutoff,
            )
        )
        chat_result = await self._session.execute(
            select(
                models.ThreadChat.user_id,
                models.ThreadChat.thread_id,
                models.ThreadChat.id,
                models.ThreadChat.status,
                models.ThreadChat.updated_at,
            ).where(
                models.ThreadChat.status.in_(STALLABLE_STATUSES),
                models.ThreadChat.updated_at <= cutoff,
            )
        )
        stalled = [
            StalledAttempt(
                user_id=user_id,
                thread_id=thread_id,
                thread_chat_id=LEGACY_THREAD_CHAT_ID,
                status=status,
                updated_at=updated_at,
            )
            for user_id, thread_id, status, updated_at in legacy_result.all()
        ]
        stalled.extend(
            StalledAttempt(
                user_id=user_id,
                thread_id=thread_id,
                thread_chat_id=str(chat_id),
                status=status,
                updated_at=updated_at,
            )
            for user_id, thread_id, chat_id, status, updated_at in chat_result.all()
        )
        stalled.sort(key=lambda attempt: attempt.updated_at)
        return stalled

    # ------------------------------------------------------------------
    # Persisted change events
    # ------------------------------------------------------------------

    async def append_event(
        self,
        *,
        user_id: str,
        thread_id: UUID,
        payload: dict[str, Any],
    ) -> models.ThreadEvent:
        """Append one broadcast payload for the user's open views."""

        event = models.ThreadEvent(
            id=uuid4(),
            user_id=user_id,
            thread_id=thread_id,
            payload=payload,
            created_at=datetime.now(UTC),
        )
        self._session.add(event)
        await self._session.flush()
        return event

    async def list_events(
        self,
        *,
        user_id: str,
        after: Optional[datetime] = None,
        after_event_id: Optional[UUID] = None,
        limit: int = 200,
    ) -> list[models.ThreadEvent]:
        """Return the user's events ordered by creation, after an optional cursor.

        The cursor is the ``(created_at, id)`` pair of the last event seen;
        events sharing that timestamp are returned only when their id sorts
        after ``after_event_id``.
        """

        if limit < 1:
            raise ValueError("limit must be at least 1")

        stmt: Select[tuple[models.ThreadEvent]] = select(models.ThreadEvent).where(
            models.ThreadEvent.user_id == user_id
        )
        if after is not None:
            if after_event_id is None:
                stmt = stmt.where(models.ThreadEvent.created_at > after)
            else:
                stmt = stmt.where(
                    or_(
                        models.ThreadEvent.created_at > after,
                        and_(
                            models.ThreadEvent.created_at == after,
                            models.ThreadEvent.id > after_event_id,
                        ),
                    )
                )

        stmt = stmt.order_by(
            models.ThreadEvent.created_at.asc(),
            models.ThreadEvent.id.asc(),
        ).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def prune_events(self, *, before: datetime) -> int:
        """Delete events created before ``before``; returns the number removed."""

        result = await self._session.execute(
            delete(models.ThreadEvent)
            .where(models.ThreadEvent.created_at < before)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


__all__ = [
    "QueuedAttempt",
    "QueuedThreadCounts",
    "ScheduledAttempt",
    "StalledAttempt",
    "ThreadChatNotFoundError",
    "ThreadNotFoundError",
    "ThreadRepository",
    "ThreadRepositoryError",
    "ThreadVersionError",
    "UNSET",
]
