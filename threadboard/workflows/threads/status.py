"""Thread status vocabulary and combined-status resolution."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Union
from uuid import UUID

LEGACY_THREAD_CHAT_ID = "legacy-thread-chat-id"


class ThreadStatus(str, enum.Enum):
    """Execution states shared by legacy threads and thread chats."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    QUEUED_TASKS_CONCURRENCY = "queued-tasks-concurrency"
    QUEUED_SANDBOX_CREATION_RATE_LIMIT = "queued-sandbox-creation-rate-limit"
    QUEUED_AGENT_RATE_LIMIT = "queued-agent-rate-limit"
    QUEUED_BLOCKED = "queued-blocked"
    BOOTING = "booting"
    WORKING = "working"
    STOPPING = "stopping"
    CHECKPOINTING = "checkpointing"
    WORKING_DONE = "working-done"
    WORKING_ERROR = "working-error"
    WORKING_STOPPED = "working-stopped"
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"


# Most urgent first. A thread with any attempt in an earlier state is shown
# in that state.
STATUS_PRIORITY: tuple[ThreadStatus, ...] = (
    ThreadStatus.WORKING_ERROR,
    ThreadStatus.ERROR,
    ThreadStatus.WORKING,
    ThreadStatus.BOOTING,
    ThreadStatus.STOPPING,
    ThreadStatus.CHECKPOINTING,
    ThreadStatus.WORKING_DONE,
    ThreadStatus.COMPLETE,
    ThreadStatus.STOPPED,
    ThreadStatus.WORKING_STOPPED,
    ThreadStatus.QUEUED,
    ThreadStatus.QUEUED_TASKS_CONCURRENCY,
    ThreadStatus.QUEUED_SANDBOX_CREATION_RATE_LIMIT,
    ThreadStatus.QUEUED_AGENT_RATE_LIMIT,
    ThreadStatus.QUEUED_BLOCKED,
    ThreadStatus.SCHEDULED,
    ThreadStatus.DRAFT,
)

STATUS_PRIORITY_RANK: dict[ThreadStatus, int] = {
    status: rank for rank, status in enumerate(STATUS_PRIORITY)
}

RATE_LIMITED_STATUSES = frozenset(
    {
        ThreadStatus.QUEUED_SANDBOX_CREATION_RATE_LIMIT,
        ThreadStatus.QUEUED_AGENT_RATE_LIMIT,
    }
)

BACKPRESSURE_STATUSES = frozenset(
    {
        ThreadStatus.QUEUED_TASKS_CONCURRENCY,
        *RATE_LIMITED_STATUSES,
    }
)

QUEUED_STATUSES = frozenset(
    {
        ThreadStatus.QUEUED,
        ThreadStatus.QUEUED_BLOCKED,
        *BACKPRESSURE_STATUSES,
    }
)

ACTIVE_STATUSES = frozenset({ThreadStatus.BOOTING, ThreadStatus.WORKING})

STALLABLE_STATUSES = frozenset(
    {
        ThreadStatus.BOOTING,
        ThreadStatus.STOPPING,
        ThreadStatus.WORKING,
        ThreadStatus.WORKING_DONE,
        ThreadStatus.WORKING_ERROR,
        ThreadStatus.CHECKPOINTING,
    }
)


def combined_status(statuses: Iterable[ThreadStatus | str]) -> ThreadStatus:
    """Reduce per-attempt statuses to the single status shown for a thread.

    An empty input means the thread has no attempt yet and reads as queued.
    """

    present = [ThreadStatus(status) for status in statuses]
    if not present:
        return ThreadStatus.QUEUED
    # min() over the rank table is order independent.
    return min(
        present,
        key=lambda status: STATUS_PRIORITY_RANK.get(status, len(STATUS_PRIORITY)),
    )


def is_legacy_chat_id(thread_chat_id: object) -> bool:
    return str(thread_chat_id) == LEGACY_THREAD_CHAT_ID


def parse_thread_chat_id(thread_chat_id: UUID | str) -> UUID | None:
    """Return the chat UUID, or ``None`` for the legacy attempt sentinel.

    Raises ``ValueError`` for anything else that is not a UUID.
    """

    if isinstance(thread_chat_id, UUID):
        return thread_chat_id
    if is_legacy_chat_id(thread_chat_id):
        return None
    return UUID(str(thread_chat_id))


@dataclass(frozen=True, slots=True)
class LegacyAttempt:
    """The implicit single attempt stored on a ``version == 0`` thread row."""

    thread_id: UUID
    status: ThreadStatus

    @property
    def thread_chat_id(self) -> str:
        return LEGACY_THREAD_CHAT_ID


@dataclass(frozen=True, slots=True)
class ChatAttempt:
    """One thread chat row of a ``version > 0`` thread."""

    thread_id: UUID
    chat_id: UUID
    status: ThreadStatus

    @property
    def thread_chat_id(self) -> str:
        return str(self.chat_id)


Attempt = Union[LegacyAttempt, ChatAttempt]


__all__ = [
    "ACTIVE_STATUSES",
    "Attempt",
    "BACKPRESSURE_STATUSES",
    "ChatAttempt",
    "LEGACY_THREAD_CHAT_ID",
    "LegacyAttempt",
    "QUEUED_STATUSES",
    "RATE_LIMITED_STATUSES",
    "STALLABLE_STATUSES",
    "STATUS_PRIORITY",
    "STATUS_PRIORITY_RANK",
    "ThreadStatus",
    "combined_status",
    "is_legacy_chat_id",
    "parse_thread_chat_id",
]
