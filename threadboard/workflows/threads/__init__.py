"""Thread lifecycle primitives: statuses, persistence models and board columns.

Repository, service and broadcast helpers live in their own modules and are
imported from there so that the pydantic schemas can depend on this package.
"""

from threadboard.workflows.threads.board import (
    BOARD_COLUMNS,
    BoardColumn,
    column_for_thread,
    group_threads_by_column,
    project_column,
)
from threadboard.workflows.threads.models import (
    PullRequestChecksStatus,
    PullRequestStatus,
    Thread,
    ThreadChat,
)
from threadboard.workflows.threads.status import (
    LEGACY_THREAD_CHAT_ID,
    STATUS_PRIORITY,
    ThreadStatus,
    combined_status,
)

__all__ = [
    "BOARD_COLUMNS",
    "BoardColumn",
    "LEGACY_THREAD_CHAT_ID",
    "PullRequestChecksStatus",
    "PullRequestStatus",
    "STATUS_PRIORITY",
    "Thread",
    "ThreadChat",
    "ThreadStatus",
    "column_for_thread",
    "combined_status",
    "group_threads_by_column",
    "project_column",
]
