"""Per-user fan-out of thread change notifications."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol
from uuid import UUID

from threadboard.config.settings import settings
from threadboard.schemas.thread_models import BroadcastThreadData
from threadboard.workflows.threads.repositories import ThreadRepository

logger = logging.getLogger(__name__)


class BroadcastPublisher(Protocol):
    """Anything that can deliver a thread change to a user's open views."""

    async def publish(self, user_id: str, data: BroadcastThreadData) -> None: ...


class NullBroadcaster:
    """Publisher that discards payloads; the service default outside the API."""

    async def publish(self, user_id: str, data: BroadcastThreadData) -> None:
        logger.debug(
            "Dropping broadcast without listeners",
            extra={"user_id": user_id, "thread_id": data.thread_id},
        )


class ThreadEventRecorder:
    """Publisher for worker processes: persists each payload as a thread event.

    API processes stream these rows to their subscribers alongside the
    in-process hub. The event is committed on its own, after the change it
    describes.
    """

    def __init__(self, repository: ThreadRepository) -> None:
        self._repository = repository

    async def publish(self, user_id: str, data: BroadcastThreadData) -> None:
        event = await self._repository.append_event(
            user_id=user_id,
            thread_id=UUID(data.thread_id),
            payload=data.to_wire(),
        )
        await self._repository.commit()
        logger.debug(
            "Recorded thread event",
            extra={
                "user_id": user_id,
                "thread_id": data.thread_id,
                "event_id": str(event.id),
            },
        )


class ThreadBroadcastHub:
    """In-process hub delivering payloads to every subscriber of a user.

    Each subscriber owns a bounded queue. When a slow subscriber's queue is
    full the oldest payload is discarded; clients treat any payload as a
    refetch hint, so a drop only delays a refresh.
    """

    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue_size = max(1, int(queue_size))
        self._subscribers: dict[str, set[asyncio.Queue[BroadcastThreadData]]] = (
            defaultdict(set)
        )

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))

    async def publish(self, user_id: str, data: BroadcastThreadData) -> None:
        for queue in list(self._subscribers.get(user_id, ())):
            if queue.full():
                queue.get_nowait()
                logger.warning(
                    "Broadcast subscriber queue full; dropped oldest payload",
                    extra={"user_id": user_id},
                )
            queue.put_nowait(data)

    @asynccontextmanager
    async def subscribe(
        self, user_id: str
    ) -> AsyncIterator[asyncio.Queue[BroadcastThreadData]]:
        queue: asyncio.Queue[BroadcastThreadData] = asyncio.Queue(
            maxsize=self._queue_size
        )
        self._subscribers[user_id].add(queue)
        logger.debug("Broadcast subscriber attached", extra={"user_id": user_id})
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(user_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    self._subscribers.pop(user_id, None)
            logger.debug("Broadcast subscriber detached", extra={"user_id": user_id})


_hub: ThreadBroadcastHub | None = None


def get_broadcast_hub() -> ThreadBroadcastHub:
    """Return the process-wide hub, created on first use."""

    global _hub
    if _hub is None:
        _hub = ThreadBroadcastHub(
            queue_size=settings.thread_queue.broadcast_queue_size
        )
    return _hub


__all__ = [
    "BroadcastPublisher",
    "NullBroadcaster",
    "ThreadBroadcastHub",
    "ThreadEventRecorder",
    "get_broadcast_hub",
]
