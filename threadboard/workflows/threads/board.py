"""Board column projection for threads."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable

from threadboard.workflows.threads.models import (
    PullRequestChecksStatus,
    PullRequestStatus,
    Thread,
)
from threadboard.workflows.threads.status import ThreadStatus


class BoardColumn(str, enum.Enum):
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class BoardColumnInfo:
    id: BoardColumn
    title: str
    description: str


BOARD_COLUMNS: tuple[BoardColumnInfo, ...] = (
    BoardColumnInfo(BoardColumn.BACKLOG, "Backlog", "Tasks waiting to be started"),
    BoardColumnInfo(
        BoardColumn.IN_PROGRESS, "In Progress", "Tasks currently being worked on"
    ),
    BoardColumnInfo(
        BoardColumn.IN_REVIEW, "In Review", "Tasks with open PRs awaiting review"
    ),
    BoardColumnInfo(BoardColumn.DONE, "Done", "Completed tasks"),
    BoardColumnInfo(BoardColumn.CANCELLED, "Cancelled", "Cancelled or failed tasks"),
)

_CANCELLED_STATUSES = frozenset(
    {
        ThreadStatus.ERROR,
        ThreadStatus.WORKING_ERROR,
        ThreadStatus.STOPPED,
        ThreadStatus.WORKING_STOPPED,
    }
)

_BACKLOG_STATUSES = frozenset(
    {
        ThreadStatus.DRAFT,
        ThreadStatus.SCHEDULED,
        ThreadStatus.QUEUED,
        ThreadStatus.QUEUED_TASKS_CONCURRENCY,
        ThreadStatus.QUEUED_SANDBOX_CREATION_RATE_LIMIT,
        ThreadStatus.QUEUED_AGENT_RATE_LIMIT,
        ThreadStatus.QUEUED_BLOCKED,
    }
)

_IN_PROGRESS_STATUSES = frozenset(
    {
        ThreadStatus.BOOTING,
        ThreadStatus.WORKING,
        ThreadStatus.STOPPING,
        ThreadStatus.CHECKPOINTING,
        ThreadStatus.WORKING_DONE,
    }
)


def project_column(
    combined_status: ThreadStatus,
    *,
    is_backlog: bool = False,
    has_open_pr: bool = False,
    pr_merged: bool = False,
    pr_checks_failing: bool = False,
) -> BoardColumn:
    """Map a thread's combined status and pull-request state to a column."""

    if is_backlog:
        return BoardColumn.BACKLOG
    if combined_status in _CANCELLED_STATUSES:
        return BoardColumn.CANCELLED
    if combined_status in _BACKLOG_STATUSES:
        return BoardColumn.BACKLOG
    if combined_status in _IN_PROGRESS_STATUSES:
        return BoardColumn.IN_PROGRESS
    if combined_status == ThreadStatus.COMPLETE:
        if pr_merged:
            return BoardColumn.DONE
        if has_open_pr or pr_checks_failing:
            return BoardColumn.IN_REVIEW
        return BoardColumn.DONE
    return BoardColumn.BACKLOG


def column_for_thread(thread: Thread) -> BoardColumn:
    return project_column(
        thread.combined_status,
        is_backlog=thread.is_backlog,
        has_open_pr=(
            thread.github_pr_number is not None
            and thread.pr_status == PullRequestStatus.OPEN
        ),
        pr_merged=thread.pr_status == PullRequestStatus.MERGED,
        pr_checks_failing=thread.pr_checks_status == PullRequestChecksStatus.FAILURE,
    )


def group_threads_by_column(
    threads: Iterable[Thread],
) -> dict[BoardColumn, list[Thread]]:
    """Group threads by column; every column is present, in board order."""

    grouped: dict[BoardColumn, list[Thread]] = {
        info.id: [] for info in BOARD_COLUMNS
    }
    for thread in threads:
        grouped[column_for_thread(thread)].append(thread)
    return grouped


__all__ = [
    "BOARD_COLUMNS",
    "BoardColumn",
    "BoardColumnInfo",
    "column_for_thread",
    "group_threads_by_column",
    "project_column",
]
