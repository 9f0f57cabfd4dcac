"""SQLAlchemy models for threads and their execution attempts."""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from api_service.db.models import Base, json_dict, mutable_json_list
from threadboard.workflows.threads.status import (
    Attempt,
    ChatAttempt,
    LegacyAttempt,
    ThreadStatus,
    combined_status,
)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Return enum values so SQLAlchemy persists the hyphenated labels, not names."""

    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PullRequestStatus(str, enum.Enum):
    """State of the pull request associated with a thread."""

    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class PullRequestChecksStatus(str, enum.Enum):
    """Aggregated CI check state for a thread's pull request."""

    NONE = "none"
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"


def _status_column() -> Enum:
    return Enum(
        ThreadStatus,
        name="threadstatus",
        native_enum=True,
        validate_strings=True,
        values_callable=_enum_values,
    )


class Thread(Base):
    """One user-facing work item tracked on the board."""

    __tablename__ = "threads"
    __table_args__ = (
        Index("ix_threads_user_id_status_created_at", "user_id", "status", "created_at"),
        Index("ix_threads_user_id_archived_updated_at", "user_id", "archived", "updated_at"),
        Index("ix_threads_automation_id", "automation_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    github_repo_full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    github_pr_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pr_status: Mapped[Optional[PullRequestStatus]] = mapped_column(
        Enum(
            PullRequestStatus,
            name="pullrequeststatus",
            native_enum=True,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        nullable=True,
    )
    pr_checks_status: Mapped[Optional[PullRequestChecksStatus]] = mapped_column(
        Enum(
            PullRequestChecksStatus,
            name="pullrequestchecksstatus",
            native_enum=True,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        nullable=True,
    )
    automation_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_thread_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("threads.id", ondelete="SET NULL"),
        nullable=True,
    )
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_backlog: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Execution fields below are authoritative only when version == 0.
    status: Mapped[ThreadStatus] = mapped_column(
        _status_column(),
        nullable=False,
        default=ThreadStatus.QUEUED,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schedule_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reattempt_queue_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    messages: Mapped[list[Any]] = mapped_column(
        mutable_json_list(), nullable=False, default=list
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    thread_chats: Mapped[list["ThreadChat"]] = relationship(
        "ThreadChat",
        back_populates="thread",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ThreadChat.created_at",
    )

    @property
    def attempts(self) -> list[Attempt]:
        """Execution attempts as one uniform list, whatever the row shape."""

        if self.version == 0:
            return [LegacyAttempt(thread_id=self.id, status=self.status)]
        return [
            ChatAttempt(thread_id=self.id, chat_id=chat.id, status=chat.status)
            for chat in self.thread_chats
        ]

    @property
    def combined_status(self) -> ThreadStatus:
        return combined_status(attempt.status for attempt in self.attempts)


class ThreadChat(Base):
    """One execution attempt (agent session) of a thread."""

    __tablename__ = "thread_chats"
    __table_args__ = (
        Index(
            "ix_thread_chats_user_id_status_created_at",
            "user_id",
            "status",
            "created_at",
        ),
        Index("ix_thread_chats_thread_id", "thread_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[ThreadStatus] = mapped_column(
        _status_column(),
        nullable=False,
        default=ThreadStatus.QUEUED,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schedule_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reattempt_queue_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    messages: Mapped[list[Any]] = mapped_column(
        mutable_json_list(), nullable=False, default=list
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    thread: Mapped[Thread] = relationship("Thread", back_populates="thread_chats")


class ThreadEvent(Base):
    """Persisted broadcast payload so processes without open views can notify them."""

    __tablename__ = "thread_events"
    __table_args__ = (
        Index("ix_thread_events_user_id_created_at", "user_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # No foreign key: deletion events outlive their thread.
    thread_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        json_dict(), nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )


__all__ = [
    "PullRequestChecksStatus",
    "PullRequestStatus",
    "Thread",
    "ThreadChat",
    "ThreadEvent",
]
