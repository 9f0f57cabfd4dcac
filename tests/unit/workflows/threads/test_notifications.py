"""Unit tests for thread list refetch decisions and list filters."""

from __future__ import annotations

from uuid import uuid4

import pytest

from threadboard.schemas.thread_models import BroadcastThreadData
from threadboard.workflows.threads import models
from threadboard.workflows.threads.notifications import (
    ThreadListFilters,
    is_valid_thread_list_filter,
    matches_thread_list_filter,
    should_refetch,
)
from threadboard.workflows.threads.status import ThreadStatus

THREAD_ID = "thread-1"


def test_known_thread_message_append_does_not_refetch() -> None:
    event = {"threadId": THREAD_ID, "messagesUpdated": True}

    assert should_refetch(THREAD_ID, event, {THREAD_ID}, False) is False


def test_known_thread_message_append_with_status_refetches() -> None:
    event = {
        "threadId": THREAD_ID,
        "messagesUpdated": True,
        "threadStatusUpdated": "working",
    }

    assert should_refetch(THREAD_ID, event, {THREAD_ID}, False) is True


@pytest.mark.parametrize(
    "event",
    [
        {"threadId": THREAD_ID, "threadStatusUpdated": "complete"},
        {"threadId": THREAD_ID, "isThreadArchived": True},
        {"threadId": THREAD_ID, "isThreadBacklog": False},
        {"threadId": THREAD_ID, "isThreadDeleted": True},
        {"threadId": THREAD_ID},
    ],
)
def test_known_thread_refetches_on_other_events(event: dict) -> None:
    assert should_refetch(THREAD_ID, event, {THREAD_ID}, False) is True


def test_unknown_thread_entering_archived_view() -> None:
    event = BroadcastThreadData(thread_id=THREAD_ID, is_thread_archived=True)

    assert should_refetch(THREAD_ID, event, set(), True) is True
    assert should_refetch(THREAD_ID, event, set(), False) is False


def test_unknown_thread_created_or_backlog_changed() -> None:
    created = {"threadId": THREAD_ID, "isThreadCreated": True}
    backlog = {"threadId": THREAD_ID, "isThreadBacklog": False}
    status_only = {"threadId": THREAD_ID, "threadStatusUpdated": "working"}

    assert should_refetch(THREAD_ID, created, set(), False) is True
    assert should_refetch(THREAD_ID, backlog, set(), False) is True
    assert should_refetch(THREAD_ID, status_only, set(), False) is False


def test_unknown_thread_with_other_automation_is_ignored() -> None:
    event = {
        "threadId": THREAD_ID,
        "isThreadCreated": True,
        "threadAutomationId": "auto-2",
    }

    assert should_refetch(THREAD_ID, event, set(), False, "auto-1") is False
    assert should_refetch(THREAD_ID, event, set(), False, "auto-2") is True


def test_empty_automation_filter_does_not_restrict_view() -> None:
    event = {"threadId": THREAD_ID, "isThreadCreated": True}

    assert should_refetch(THREAD_ID, event, set(), False, "") is True


def test_broadcast_wire_format_omits_unset_fields() -> None:
    event = BroadcastThreadData(
        thread_id=THREAD_ID,
        thread_status_updated=ThreadStatus.QUEUED,
    )

    assert event.to_wire() == {"threadId": THREAD_ID, "threadStatusUpdated": "queued"}


def test_is_valid_thread_list_filter() -> None:
    assert is_valid_thread_list_filter({})
    assert is_valid_thread_list_filter({"archived": False, "automationId": "a"})
    assert not is_valid_thread_list_filter({"archived": "no"})
    assert not is_valid_thread_list_filter({"isBacklog": 1})
    assert not is_valid_thread_list_filter(["archived"])


def test_filters_from_mapping_and_matching() -> None:
    filters = ThreadListFilters.from_mapping({"archived": False, "automationId": "a"})
    thread = models.Thread(
        id=uuid4(),
        user_id="u",
        github_repo_full_name="acme/widgets",
        archived=False,
        is_backlog=True,
        automation_id="a",
    )

    assert matches_thread_list_filter(thread, filters)
    assert not matches_thread_list_filter(
        thread, ThreadListFilters(is_backlog=False)
    )
    with pytest.raises(ValueError):
        ThreadListFilters.from_mapping({"archived": "yes"})
