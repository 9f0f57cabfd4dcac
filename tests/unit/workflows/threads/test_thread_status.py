"""Unit tests for thread status resolution."""

from __future__ import annotations

import itertools
import random
from uuid import uuid4

import pytest

from threadboard.workflows.threads.status import (
    ACTIVE_STATUSES,
    LEGACY_THREAD_CHAT_ID,
    RATE_LIMITED_STATUSES,
    STATUS_PRIORITY,
    STATUS_PRIORITY_RANK,
    ChatAttempt,
    LegacyAttempt,
    ThreadStatus,
    combined_status,
    is_legacy_chat_id,
    parse_thread_chat_id,
)


def test_priority_table_covers_every_status_once() -> None:
    assert len(STATUS_PRIORITY) == len(ThreadStatus) == 17
    assert set(STATUS_PRIORITY) == set(ThreadStatus)
    assert STATUS_PRIORITY[0] is ThreadStatus.WORKING_ERROR
    assert STATUS_PRIORITY[-1] is ThreadStatus.DRAFT
    assert STATUS_PRIORITY_RANK[ThreadStatus.WORKING] < STATUS_PRIORITY_RANK[
        ThreadStatus.COMPLETE
    ]


def test_combined_status_of_no_attempts_is_queued() -> None:
    assert combined_status([]) is ThreadStatus.QUEUED


def test_combined_status_prefers_working_over_complete() -> None:
    assert combined_status(["complete", "working"]) is ThreadStatus.WORKING


def test_combined_status_accepts_string_values() -> None:
    assert (
        combined_status(["queued-agent-rate-limit", "scheduled"])
        is ThreadStatus.QUEUED_AGENT_RATE_LIMIT
    )


@pytest.mark.parametrize("size", [1, 2, 3, 5])
def test_combined_status_is_first_priority_entry_present(size: int) -> None:
    rng = random.Random(size)
    for _ in range(50):
        statuses = rng.sample(list(ThreadStatus), size)
        expected = next(status for status in STATUS_PRIORITY if status in statuses)
        for ordering in itertools.islice(itertools.permutations(statuses), 6):
            assert combined_status(ordering) is expected


def test_combined_status_rejects_unknown_values() -> None:
    with pytest.raises(ValueError):
        combined_status(["paused"])


def test_status_groups() -> None:
    assert RATE_LIMITED_STATUSES == {
        ThreadStatus.QUEUED_SANDBOX_CREATION_RATE_LIMIT,
        ThreadStatus.QUEUED_AGENT_RATE_LIMIT,
    }
    assert ACTIVE_STATUSES == {ThreadStatus.BOOTING, ThreadStatus.WORKING}


def test_attempt_identities() -> None:
    thread_id = uuid4()
    chat_id = uuid4()

    legacy = LegacyAttempt(thread_id=thread_id, status=ThreadStatus.WORKING)
    chat = ChatAttempt(thread_id=thread_id, chat_id=chat_id, status=ThreadStatus.QUEUED)

    assert legacy.thread_chat_id == LEGACY_THREAD_CHAT_ID
    assert chat.thread_chat_id == str(chat_id)
    assert is_legacy_chat_id(legacy.thread_chat_id)
    assert not is_legacy_chat_id(chat.thread_chat_id)


def test_parse_thread_chat_id() -> None:
    chat_id = uuid4()

    assert parse_thread_chat_id(LEGACY_THREAD_CHAT_ID) is None
    assert parse_thread_chat_id(chat_id) == chat_id
    assert parse_thread_chat_id(str(chat_id)) == chat_id
    with pytest.raises(ValueError):
        parse_thread_chat_id("not-a-chat")
