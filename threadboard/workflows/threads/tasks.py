"""Celery tasks sweeping thread queues, schedules and stalled attempts."""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Coroutine, TypeVar

from celery.utils.log import get_task_logger

from api_service.db.base import engine, get_async_session_context
from threadboard.config.settings import settings
from threadboard.workflows.threads.broadcast import ThreadEventRecorder
from threadboard.workflows.threads.celery_app import (
    TASK_PROCESS_READY_QUEUES,
    TASK_PRUNE_EVENTS,
    TASK_RUN_SCHEDULED,
    TASK_STOP_STALLED,
    celery_app,
)
from threadboard.workflows.threads.repositories import ThreadRepository
from threadboard.workflows.threads.service import ThreadLifecycleService

logger = get_task_logger(__name__)

T = TypeVar("T")


def _run_coro(coro: Coroutine[Any, Any, T]) -> T:
    """Execute an async coroutine from sync Celery tasks safely."""

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    result: dict[str, Any] = {}

    def _runner() -> None:
        try:
            result["value"] = asyncio.run(coro)
        except Exception as exc:  # pragma: no cover - propagate errors
            result["error"] = exc

    thread = threading.Thread(target=_runner, name="thread-lifecycle-task")
    thread.start()
    thread.join()

    if "error" in result:
        raise result["error"]

    return result["value"]


def _build_service(session) -> ThreadLifecycleService:
    # Workers serve no streams; changes are recorded for the API to relay.
    repository = ThreadRepository(session)
    return ThreadLifecycleService(
        repository, broadcaster=ThreadEventRecorder(repository)
    )


async def _dispose_engine() -> None:
    # Pooled connections belong to the event loop that opened them.
    await engine.dispose()


async def _process_ready_queues() -> dict[str, int]:
    try:
        async with get_async_session_context() as session:
            promoted = await _build_service(session).process_ready_queues()
    finally:
        await _dispose_engine()
    return {user_id: len(items) for user_id, items in promoted.items()}


async def _run_scheduled_threads() -> int:
    try:
        async with get_async_session_context() as session:
            started = await _build_service(session).run_scheduled_due()
    finally:
        await _dispose_engine()
    return len(started)


async def _stop_stalled_threads() -> int:
    try:
        async with get_async_session_context() as session:
            stopped = await _build_service(session).stop_stalled()
    finally:
        await _dispose_engine()
    return len(stopped)


async def _prune_thread_events() -> int:
    retention = timedelta(seconds=settings.thread_queue.event_retention_seconds)
    try:
        async with get_async_session_context() as session:
            repository = ThreadRepository(session)
            removed = await repository.prune_events(
                before=datetime.now(UTC) - retention
            )
            await repository.commit()
    finally:
        await _dispose_engine()
    return removed


@celery_app.task(name=TASK_PROCESS_READY_QUEUES)
def process_ready_queues() -> dict[str, Any]:
    """Promote queued attempts for users with elapsed backoff or stuck queues."""

    promoted = _run_coro(_process_ready_queues())
    if promoted:
        logger.info(
            "Promoted %s queued threads for %s users",
            sum(promoted.values()),
            len(promoted),
        )
    return {"promoted": promoted}


@celery_app.task(name=TASK_RUN_SCHEDULED)
def run_scheduled_threads() -> dict[str, Any]:
    """Release scheduled attempts whose start time has passed."""

    started = _run_coro(_run_scheduled_threads())
    if started:
        logger.info("Released %s scheduled threads", started)
    return {"started": started}


@celery_app.task(name=TASK_STOP_STALLED)
def stop_stalled_threads() -> dict[str, Any]:
    """Complete attempts stuck in an execution status past the cutoff."""

    stopped = _run_coro(_stop_stalled_threads())
    if stopped:
        logger.warning("Stopped %s stalled threads", stopped)
    return {"stopped": stopped}


@celery_app.task(name=TASK_PRUNE_EVENTS)
def prune_thread_events() -> dict[str, Any]:
    """Delete recorded thread events past the retention window."""

    removed = _run_coro(_prune_thread_events())
    if removed:
        logger.info("Pruned %s thread events", removed)
    return {"removed": removed}


__all__ = [
    "process_ready_queues",
    "prune_thread_events",
    "run_scheduled_threads",
    "stop_stalled_threads",
]
