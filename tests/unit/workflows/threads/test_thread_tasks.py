"""Unit tests for the thread lifecycle Celery tasks."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from api_service.db.models import Base
from threadboard.config.settings import settings
from threadboard.workflows.threads import celery_app as celery_module
from threadboard.workflows.threads import models, tasks
from threadboard.workflows.threads.repositories import ThreadRepository
from threadboard.workflows.threads.service import DequeuedAttempt
from threadboard.workflows.threads.status import ThreadStatus


@pytest.fixture
def fake_service(monkeypatch):
    service = AsyncMock()
    sessions: list[object] = []

    @asynccontextmanager
    async def _session_context():
        session = object()
        sessions.append(session)
        yield session

    monkeypatch.setattr(tasks, "get_async_session_context", _session_context)
    monkeypatch.setattr(tasks, "_build_service", lambda session: service)
    monkeypatch.setattr(tasks, "_dispose_engine", AsyncMock())
    return SimpleNamespace(service=service, sessions=sessions)


def test_process_ready_queues_reports_promotions(fake_service) -> None:
    attempt = DequeuedAttempt(
        thread_id=uuid4(),
        thread_chat_id=str(uuid4()),
        old_status=ThreadStatus.QUEUED_TASKS_CONCURRENCY,
    )
    fake_service.service.process_ready_queues.return_value = {"alice": [attempt]}

    result = tasks.process_ready_queues.run()

    assert result == {"promoted": {"alice": 1}}
    assert len(fake_service.sessions) == 1
    tasks._dispose_engine.assert_awaited_once()


def test_run_scheduled_threads_reports_count(fake_service) -> None:
    fake_service.service.run_scheduled_due.return_value = [object(), object()]

    assert tasks.run_scheduled_threads.run() == {"started": 2}


def test_stop_stalled_threads_reports_count(fake_service) -> None:
    fake_service.service.stop_stalled.return_value = []

    assert tasks.stop_stalled_threads.run() == {"stopped": 0}
    fake_service.service.stop_stalled.assert_awaited_once_with()


def test_engine_is_disposed_when_sweep_fails(fake_service) -> None:
    fake_service.service.run_scheduled_due.side_effect = RuntimeError("db down")

    with pytest.raises(RuntimeError, match="db down"):
        tasks.run_scheduled_threads.run()

    tasks._dispose_engine.assert_awaited_once()


def test_beat_schedule_uses_thread_queue_intervals() -> None:
    schedule = celery_module.build_beat_schedule()

    assert schedule["process-ready-queues"]["task"] == (
        celery_module.TASK_PROCESS_READY_QUEUES
    )
    assert (
        schedule["run-scheduled-threads"]["schedule"]
        == settings.thread_queue.poll_interval_seconds
    )
    assert (
        schedule["stop-stalled-threads"]["schedule"]
        == settings.thread_queue.stalled_sweep_interval_seconds
    )
    assert celery_module.celery_app.conf.task_default_queue == (
        settings.celery.default_queue
    )
    assert schedule["prune-thread-events"] == {
        "task": celery_module.TASK_PRUNE_EVENTS,
        "schedule": settings.thread_queue.event_prune_interval_seconds,
    }


@pytest.fixture
def sqlite_sessions(monkeypatch, tmp_path):
    """Point the tasks at a file-backed sqlite database, one engine per loop."""

    db_url = f"sqlite+aiosqlite:///{tmp_path}/tasks.db"

    @asynccontextmanager
    async def _session_context():
        engine = create_async_engine(db_url)
        try:
            async with AsyncSession(engine, expire_on_commit=False) as session:
                yield session
        finally:
            await engine.dispose()

    async def _create_schema() -> None:
        engine = create_async_engine(db_url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create_schema())
    monkeypatch.setattr(tasks, "get_async_session_context", _session_context)
    monkeypatch.setattr(tasks, "_dispose_engine", AsyncMock())
    return _session_context


def test_scheduled_sweep_records_events_for_open_views(sqlite_sessions) -> None:
    async def _seed() -> str:
        async with sqlite_sessions() as session:
            repository = ThreadRepository(session)
            thread, _chat_id = await repository.create_thread(
                user_id="alice",
                github_repo_full_name="acme/widgets",
                status=ThreadStatus.SCHEDULED,
                schedule_at=datetime.now(UTC) - timedelta(minutes=1),
            )
            await repository.commit()
            return str(thread.id)

    async def _events() -> list[models.ThreadEvent]:
        async with sqlite_sessions() as session:
            result = await session.execute(select(models.ThreadEvent))
            return list(result.scalars().all())

    thread_id = asyncio.run(_seed())

    assert tasks.run_scheduled_threads.run() == {"started": 1}

    events = asyncio.run(_events())
    assert [event.user_id for event in events] == ["alice"]
    assert events[0].payload["threadId"] == thread_id
    assert events[0].payload["threadStatusUpdated"] == ThreadStatus.QUEUED.value


def test_prune_thread_events_removes_expired_rows(sqlite_sessions) -> None:
    retention = timedelta(seconds=settings.thread_queue.event_retention_seconds)

    async def _seed() -> None:
        async with sqlite_sessions() as session:
            repository = ThreadRepository(session)
            old = await repository.append_event(
                user_id="alice", thread_id=uuid4(), payload={"threadId": "old"}
            )
            old.created_at = datetime.now(UTC) - retention - timedelta(minutes=5)
            await repository.append_event(
                user_id="alice", thread_id=uuid4(), payload={"threadId": "new"}
            )
            await repository.commit()

    async def _remaining() -> list[str]:
        async with sqlite_sessions() as session:
            result = await session.execute(select(models.ThreadEvent.payload))
            return [payload["threadId"] for payload in result.scalars().all()]

    asyncio.run(_seed())

    assert tasks.prune_thread_events.run() == {"removed": 1}
    assert asyncio.run(_remaining()) == ["new"]
