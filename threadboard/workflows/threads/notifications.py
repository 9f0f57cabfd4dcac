"""Client-side list invalidation rules for broadcast thread events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection, Mapping, Optional

from threadboard.schemas.thread_models import BroadcastThreadData
from threadboard.workflows.threads.models import Thread

_FILTER_KEYS = {"archived": bool, "isBacklog": bool, "automationId": str}


@dataclass(frozen=True, slots=True)
class ThreadListFilters:
    """Filters a thread list view is currently showing."""

    archived: Optional[bool] = None
    is_backlog: Optional[bool] = None
    automation_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ThreadListFilters":
        if not is_valid_thread_list_filter(raw):
            raise ValueError(f"Invalid thread list filter: {raw!r}")
        return cls(
            archived=raw.get("archived"),
            is_backlog=raw.get("isBacklog"),
            automation_id=raw.get("automationId"),
        )


def is_valid_thread_list_filter(raw: object) -> bool:
    """Return whether ``raw`` is a well-typed filter mapping (camelCase keys)."""

    if not isinstance(raw, Mapping):
        return False
    for key, expected in _FILTER_KEYS.items():
        value = raw.get(key)
        if value is not None and not isinstance(value, expected):
            return False
    return True


def matches_thread_list_filter(thread: Thread, filters: ThreadListFilters) -> bool:
    if filters.archived is not None and thread.archived != filters.archived:
        return False
    if filters.is_backlog is not None and thread.is_backlog != filters.is_backlog:
        return False
    if (
        filters.automation_id is not None
        and thread.automation_id != filters.automation_id
    ):
        return False
    return True


def _is_content_only(event: BroadcastThreadData) -> bool:
    return (
        bool(event.messages_updated)
        and event.thread_status_updated is None
        and event.is_thread_archived is None
        and event.is_thread_backlog is None
        and event.is_thread_deleted is None
    )


def should_refetch(
    thread_id: str,
    event: BroadcastThreadData | Mapping[str, Any],
    known_thread_ids: Collection[str],
    archived_filter: bool,
    automation_id_filter: Optional[str] = None,
) -> bool:
    """Decide whether a list view must refetch after ``event``.

    Runs once per incoming event per open view, so it stays a cheap pure
    predicate. A known thread refetches unless the event is a pure
    message append; an unknown thread refetches only when it may be entering
    the visible set.
    """

    if not isinstance(event, BroadcastThreadData):
        event = BroadcastThreadData.model_validate(event)

    if str(thread_id) in known_thread_ids:
        return not _is_content_only(event)

    if automation_id_filter and event.thread_automation_id != automation_id_filter:
        return False
    if event.is_thread_archived is not None and event.is_thread_archived == archived_filter:
        return True
    if event.is_thread_created:
        return True
    if event.is_thread_backlog is not None:
        return True
    return False


__all__ = [
    "ThreadListFilters",
    "is_valid_thread_list_filter",
    "matches_thread_list_filter",
    "should_refetch",
]
