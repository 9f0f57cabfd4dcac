"""Unit tests for the threads API router."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Iterator
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api_service.api.routers.threads import _get_service, router
from threadboard.workflows.threads.board import BoardColumn
from threadboard.workflows.threads.repositories import (
    UNSET,
    QueuedAttempt,
    ThreadNotFoundError,
)
from threadboard.workflows.threads.service import (
    DequeuedAttempt,
    QueueSnapshot,
    ThreadLifecycleValidationError,
    TransitionResult,
)
from threadboard.workflows.threads.status import ThreadStatus

HEADERS = {"X-Threadboard-User": "user-1"}


def _build_thread(status: ThreadStatus = ThreadStatus.WORKING):
    now = datetime.now(UTC)
    thread_id = uuid4()
    chat = SimpleNamespace(
        id=uuid4(),
        thread_id=thread_id,
        status=status,
        error_message=None,
        schedule_at=None,
        reattempt_queue_at=None,
        created_at=now,
        updated_at=now,
    )
    return SimpleNamespace(
        id=thread_id,
        user_id="user-1",
        name="Fix flaky test",
        github_repo_full_name="acme/widgets",
        github_pr_number=None,
        pr_status=None,
        pr_checks_status=None,
        automation_id=None,
        parent_thread_id=None,
        archived=False,
        is_backlog=False,
        version=1,
        status=ThreadStatus.QUEUED,
        combined_status=status,
        error_message=None,
        schedule_at=None,
        reattempt_queue_at=None,
        thread_chats=[chat],
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def client() -> Iterator[tuple[TestClient, AsyncMock]]:
    """Provide a TestClient with the thread service dependency overridden."""

    app = FastAPI()
    app.include_router(router)
    mock_service = AsyncMock()
    app.dependency_overrides[_get_service] = lambda: mock_service

    with TestClient(app) as test_client:
        yield test_client, mock_service
    app.dependency_overrides.clear()


def test_requests_without_user_header_are_rejected(client) -> None:
    test_client, service = client

    response = test_client.get("/api/threads")

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "missing_user"
    service.list_threads.assert_not_called()


def test_list_threads_passes_filters(client) -> None:
    test_client, service = client
    thread = _build_thread()
    service.list_threads.return_value = [thread]

    response = test_client.get(
        "/api/threads",
        params={"archived": "false", "automationId": "auto-1"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    item = response.json()["items"][0]
    assert item["id"] == str(thread.id)
    assert item["combinedStatus"] == "working"
    assert item["threadChats"][0]["status"] == "working"
    filters = service.list_threads.await_args.kwargs["filters"]
    assert filters.archived is False
    assert filters.is_backlog is None
    assert filters.automation_id == "auto-1"


def test_board_returns_every_column(client) -> None:
    test_client, service = client
    thread = _build_thread()
    service.get_board.return_value = {
        BoardColumn.BACKLOG: [],
        BoardColumn.IN_PROGRESS: [thread],
        BoardColumn.IN_REVIEW: [],
        BoardColumn.DONE: [],
        BoardColumn.CANCELLED: [],
    }

    response = test_client.get("/api/threads/board", headers=HEADERS)

    assert response.status_code == 200
    columns = response.json()["columns"]
    assert [column["id"] for column in columns] == [
        "backlog",
        "in_progress",
        "in_review",
        "done",
        "cancelled",
    ]
    assert columns[1]["title"] == "In Progress"
    assert columns[1]["threads"][0]["id"] == str(thread.id)


def test_create_thread_returns_identities(client) -> None:
    test_client, service = client
    thread = _build_thread()
    service.create_thread.return_value = (thread, str(thread.thread_chats[0].id))

    response = test_client.post(
        "/api/threads",
        json={"githubRepoFullName": "acme/widgets", "automationId": "auto-1"},
        headers=HEADERS,
    )

    assert response.status_code == 201
    assert response.json() == {
        "threadId": str(thread.id),
        "threadChatId": str(thread.thread_chats[0].id),
    }
    kwargs = service.create_thread.await_args.kwargs
    assert kwargs["user_id"] == "user-1"
    assert kwargs["automation_id"] == "auto-1"
    assert kwargs["enable_thread_chats"] is True


def test_create_thread_validates_repository_name(client) -> None:
    test_client, service = client

    response = test_client.post(
        "/api/threads",
        json={"githubRepoFullName": "not a repo"},
        headers=HEADERS,
    )

    assert response.status_code == 422
    service.create_thread.assert_not_called()


def test_transition_reports_lost_race(client) -> None:
    test_client, service = client
    thread_id = uuid4()
    chat_id = uuid4()
    service.transition.return_value = TransitionResult(applied=False)

    response = test_client.post(
        f"/api/threads/{thread_id}/chats/{chat_id}/transition",
        json={"fromStatus": "queued", "toStatus": "booting"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {"applied": False}
    kwargs = service.transition.await_args.kwargs
    assert kwargs["from_status"] is ThreadStatus.QUEUED
    assert kwargs["to_status"] is ThreadStatus.BOOTING
    assert kwargs["reattempt_queue_at"] is UNSET


def test_transition_forwards_explicit_reattempt_time(client) -> None:
    test_client, service = client
    service.transition.return_value = TransitionResult(
        applied=True, combined_status=ThreadStatus.QUEUED_AGENT_RATE_LIMIT
    )

    response = test_client.post(
        f"/api/threads/{uuid4()}/chats/legacy-thread-chat-id/transition",
        json={
            "fromStatus": "queued",
            "toStatus": "queued-agent-rate-limit",
            "reattemptQueueAt": "2026-03-01T12:05:00Z",
        },
        headers=HEADERS,
    )

    assert response.status_code == 200
    kwargs = service.transition.await_args.kwargs
    assert kwargs["thread_chat_id"] == "legacy-thread-chat-id"
    assert kwargs["reattempt_queue_at"] == datetime(2026, 3, 1, 12, 5, tzinfo=UTC)


def test_transition_rejects_unknown_status(client) -> None:
    test_client, service = client

    response = test_client.post(
        f"/api/threads/{uuid4()}/chats/{uuid4()}/transition",
        json={"fromStatus": "queued", "toStatus": "paused"},
        headers=HEADERS,
    )

    assert response.status_code == 422
    service.transition.assert_not_called()


def test_transition_maps_validation_errors(client) -> None:
    test_client, service = client
    service.transition.side_effect = ThreadLifecycleValidationError("bad chat id")

    response = test_client.post(
        f"/api/threads/{uuid4()}/chats/chat-7/transition",
        json={"fromStatus": "queued", "toStatus": "booting"},
        headers=HEADERS,
    )

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_thread_request"


def test_update_thread_maps_not_found(client) -> None:
    test_client, service = client
    thread_id = uuid4()
    service.update_thread.side_effect = ThreadNotFoundError(thread_id)

    response = test_client.patch(
        f"/api/threads/{thread_id}", json={"archived": True}, headers=HEADERS
    )

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "thread_not_found"


def test_update_thread_requires_a_flag(client) -> None:
    test_client, service = client

    response = test_client.patch(f"/api/threads/{uuid4()}", json={}, headers=HEADERS)

    assert response.status_code == 422
    service.update_thread.assert_not_called()


def test_delete_and_append_messages_return_no_content(client) -> None:
    test_client, service = client
    thread_id = uuid4()

    delete_response = test_client.delete(f"/api/threads/{thread_id}", headers=HEADERS)
    append_response = test_client.post(
        f"/api/threads/{thread_id}/chats/{uuid4()}/messages",
        json={"messages": [{"type": "user", "text": "go"}]},
        headers=HEADERS,
    )

    assert delete_response.status_code == 204
    assert append_response.status_code == 204
    service.delete_thread.assert_awaited_once_with(
        user_id="user-1", thread_id=thread_id
    )
    assert service.append_messages.await_args.kwargs["messages"] == [
        {"type": "user", "text": "go"}
    ]


def test_eligible_and_dequeue(client) -> None:
    test_client, service = client
    thread_id = uuid4()
    chat_id = str(uuid4())
    candidate = QueuedAttempt(
        thread_id=thread_id,
        thread_chat_id=chat_id,
        status=ThreadStatus.QUEUED_TASKS_CONCURRENCY,
        created_at=datetime(2026, 3, 1, tzinfo=UTC),
    )
    service.eligible.return_value = [candidate]
    service.dequeue_one.return_value = DequeuedAttempt(
        thread_id=thread_id,
        thread_chat_id=chat_id,
        old_status=ThreadStatus.QUEUED_TASKS_CONCURRENCY,
    )

    eligible_response = test_client.get(
        "/api/threads/queue/eligible",
        params={"concurrencyLimitReached": "true"},
        headers=HEADERS,
    )
    dequeue_response = test_client.post(
        "/api/threads/queue/dequeue",
        json={"sandboxRateLimitReached": True},
        headers=HEADERS,
    )

    assert eligible_response.status_code == 200
    assert eligible_response.json()["items"][0]["status"] == (
        "queued-tasks-concurrency"
    )
    assert service.eligible.await_args_list[0].kwargs[
        "concurrency_limit_reached"
    ] is True
    assert dequeue_response.json() == {
        "dequeued": {
            "threadId": str(thread_id),
            "threadChatId": chat_id,
            "oldStatus": "queued-tasks-concurrency",
        }
    }
    assert service.dequeue_one.await_args.kwargs["eligible"] == [candidate]


def test_dequeue_returns_null_when_nothing_promoted(client) -> None:
    test_client, service = client
    service.eligible.return_value = []
    service.dequeue_one.return_value = None

    response = test_client.post("/api/threads/queue/dequeue", json={}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"dequeued": None}


def test_promote_and_counts(client) -> None:
    test_client, service = client
    service.promote_queued.return_value = []
    service.get_queue_snapshot.return_value = QueueSnapshot(
        queued_total=2,
        queued_tasks_concurrency=1,
        queued_agent_rate_limit=1,
        queued_sandbox_creation_rate_limit=0,
        active_threads=3,
        max_concurrent_threads=3,
    )

    promote_response = test_client.post(
        "/api/threads/queue/promote", json={"availableSlots": 2}, headers=HEADERS
    )
    counts_response = test_client.get("/api/threads/queue/counts", headers=HEADERS)

    assert promote_response.json() == {"items": []}
    assert service.promote_queued.await_args.kwargs["available_slots"] == 2
    assert counts_response.json() == {
        "queuedTotal": 2,
        "queuedTasksConcurrency": 1,
        "queuedAgentRateLimit": 1,
        "queuedSandboxCreationRateLimit": 0,
        "activeThreads": 3,
        "maxConcurrentThreads": 3,
    }


def test_should_refetch_endpoint(client) -> None:
    test_client, _service = client

    content_only = test_client.post(
        "/api/threads/events/should-refetch",
        json={
            "threadId": "t-1",
            "event": {"threadId": "t-1", "messagesUpdated": True},
            "knownThreadIds": ["t-1"],
        },
        headers=HEADERS,
    )
    created = test_client.post(
        "/api/threads/events/should-refetch",
        json={
            "threadId": "t-2",
            "event": {"threadId": "t-2", "isThreadCreated": True},
            "knownThreadIds": ["t-1"],
        },
        headers=HEADERS,
    )

    assert content_only.json() == {"shouldRefetch": False}
    assert created.json() == {"shouldRefetch": True}
