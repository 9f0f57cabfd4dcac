"""REST router for thread lifecycle and board operations."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api_service.db.base import async_session_maker, get_async_session
from threadboard.config.settings import settings
from threadboard.schemas.thread_models import (
    AppendMessagesRequest,
    BoardColumnModel,
    BoardResponse,
    CreateThreadRequest,
    CreateThreadResponse,
    DequeuedAttemptModel,
    DequeueRequest,
    DequeueResponse,
    EligibleListResponse,
    PromoteRequest,
    PromoteResponse,
    QueuedAttemptModel,
    QueueSnapshotModel,
    ShouldRefetchRequest,
    ShouldRefetchResponse,
    ThreadListResponse,
    ThreadModel,
    TransitionRequest,
    TransitionResponse,
    UpdateThreadRequest,
)
from threadboard.workflows.threads import BOARD_COLUMNS, models
from threadboard.workflows.threads.broadcast import (
    ThreadBroadcastHub,
    get_broadcast_hub,
)
from threadboard.workflows.threads.notifications import (
    ThreadListFilters,
    should_refetch,
)
from threadboard.workflows.threads.repositories import (
    UNSET,
    ThreadChatNotFoundError,
    ThreadNotFoundError,
    ThreadRepository,
    ThreadVersionError,
)
from threadboard.workflows.threads.service import (
    ThreadLifecycleService,
    ThreadLifecycleValidationError,
)

router = APIRouter(prefix="/api/threads", tags=["threads"])
logger = logging.getLogger(__name__)


def _get_hub() -> ThreadBroadcastHub:
    return get_broadcast_hub()


def _get_session_factory() -> Callable[[], AsyncSession]:
    return async_session_maker


async def _get_repository(
    session: AsyncSession = Depends(get_async_session),
) -> ThreadRepository:
    return ThreadRepository(session)


async def _get_service(
    repository: ThreadRepository = Depends(_get_repository),
    hub: ThreadBroadcastHub = Depends(_get_hub),
) -> ThreadLifecycleService:
    return ThreadLifecycleService(repository, broadcaster=hub)


async def _get_user_id(
    user_id: Optional[str] = Header(None, alias="X-Threadboard-User"),
) -> str:
    """Resolve the caller identity forwarded by the authenticating proxy."""

    if user_id is None or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "missing_user",
                "message": "X-Threadboard-User header is required.",
            },
        )
    return user_id.strip()


def _serialize_thread(thread: models.Thread) -> ThreadModel:
    return ThreadModel.model_validate(thread)


def _list_filters(
    archived: Optional[bool], is_backlog: Optional[bool], automation_id: Optional[str]
) -> ThreadListFilters:
    return ThreadListFilters(
        archived=archived, is_backlog=is_backlog, automation_id=automation_id
    )


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, ThreadNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "thread_not_found",
                "message": "The requested thread was not found.",
            },
        )
    if isinstance(exc, ThreadChatNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "thread_chat_not_found",
                "message": "The requested thread chat was not found.",
            },
        )
    if isinstance(exc, ThreadVersionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "thread_version_conflict",
                "message": "The thread does not support multiple chats.",
            },
        )
    if isinstance(exc, (ThreadLifecycleValidationError, ValueError)):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "invalid_thread_request",
                "message": str(exc) or "Thread request payload is invalid.",
            },
        )
    logger.exception("Unhandled thread service exception")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "code": "thread_internal_error",
            "message": "An unexpected thread service error occurred.",
        },
    )


# ----------------------------------------------------------------------
# Collection, board, queue and event routes (registered before /{thread_id})
# ----------------------------------------------------------------------


@router.get("", response_model=ThreadListResponse)
async def list_threads(
    *,
    archived: Optional[bool] = Query(None, alias="archived"),
    is_backlog: Optional[bool] = Query(None, alias="isBacklog"),
    automation_id: Optional[str] = Query(None, alias="automationId"),
    limit: int = Query(100, ge=1, le=500),
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> ThreadListResponse:
    """List the caller's threads, most recently updated first."""

    try:
        threads = await service.list_threads(
            user_id=user_id,
            filters=_list_filters(archived, is_backlog, automation_id),
            limit=limit,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return ThreadListResponse(items=[_serialize_thread(thread) for thread in threads])


@router.get("/board", response_model=BoardResponse)
async def get_board(
    *,
    archived: Optional[bool] = Query(False, alias="archived"),
    automation_id: Optional[str] = Query(None, alias="automationId"),
    limit: int = Query(100, ge=1, le=500),
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> BoardResponse:
    """Return the caller's threads grouped into board columns."""

    try:
        grouped = await service.get_board(
            user_id=user_id,
            filters=_list_filters(archived, None, automation_id),
            limit=limit,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return BoardResponse(
        columns=[
            BoardColumnModel(
                id=info.id,
                title=info.title,
                description=info.description,
                threads=[_serialize_thread(thread) for thread in grouped[info.id]],
            )
            for info in BOARD_COLUMNS
        ]
    )


@router.post(
    "",
    response_model=CreateThreadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_thread(
    payload: CreateThreadRequest,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> CreateThreadResponse:
    """Create a thread with its first execution attempt."""

    try:
        thread, thread_chat_id = await service.create_thread(
            user_id=user_id,
            github_repo_full_name=payload.github_repo_full_name,
            name=payload.name,
            github_pr_number=payload.github_pr_number,
            automation_id=payload.automation_id,
            parent_thread_id=payload.parent_thread_id,
            is_backlog=payload.is_backlog,
            status=payload.status,
            schedule_at=payload.schedule_at,
            enable_thread_chats=payload.enable_thread_chats,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return CreateThreadResponse(thread_id=thread.id, thread_chat_id=thread_chat_id)


@router.get("/queue/eligible", response_model=EligibleListResponse)
async def list_eligible(
    *,
    concurrency_limit_reached: bool = Query(False, alias="concurrencyLimitReached"),
    sandbox_rate_limit_reached: bool = Query(False, alias="sandboxRateLimitReached"),
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> EligibleListResponse:
    """List queued attempts that may be promoted under the given capacity flags."""

    try:
        attempts = await service.eligible(
            user_id=user_id,
            concurrency_limit_reached=concurrency_limit_reached,
            sandbox_rate_limit_reached=sandbox_rate_limit_reached,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return EligibleListResponse(
        items=[QueuedAttemptModel.model_validate(attempt) for attempt in attempts]
    )


@router.post("/queue/dequeue", response_model=DequeueResponse)
async def dequeue_one(
    payload: DequeueRequest,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> DequeueResponse:
    """Promote the oldest eligible queued attempt, if any."""

    try:
        candidates = await service.eligible(
            user_id=user_id,
            concurrency_limit_reached=payload.concurrency_limit_reached,
            sandbox_rate_limit_reached=payload.sandbox_rate_limit_reached,
        )
        dequeued = await service.dequeue_one(user_id=user_id, eligible=candidates)
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    if dequeued is None:
        return DequeueResponse(dequeued=None)
    return DequeueResponse(dequeued=DequeuedAttemptModel.model_validate(dequeued))


@router.post("/queue/promote", response_model=PromoteResponse)
async def promote_queued(
    payload: PromoteRequest,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> PromoteResponse:
    """Promote one queued attempt per free concurrency slot."""

    try:
        promoted = await service.promote_queued(
            user_id=user_id,
            available_slots=payload.available_slots,
            sandbox_rate_limit_reached=payload.sandbox_rate_limit_reached,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return PromoteResponse(
        items=[DequeuedAttemptModel.model_validate(item) for item in promoted]
    )


@router.get("/queue/counts", response_model=QueueSnapshotModel)
async def get_queue_counts(
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> QueueSnapshotModel:
    """Return queue depth per backpressure status and active-thread usage."""

    try:
        snapshot = await service.get_queue_snapshot(user_id=user_id)
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return QueueSnapshotModel.model_validate(snapshot)


def _format_thread_update(payload: dict) -> str:
    return (
        "event: thread_update\n"
        f"data: {json.dumps(payload, ensure_ascii=True)}\n\n"
    )


async def _iter_thread_events(
    request: Request,
    *,
    user_id: str,
    hub: ThreadBroadcastHub,
    session_factory: Callable[[], AsyncSession],
    poll_seconds: float,
    keepalive_seconds: float,
    after: Optional[datetime] = None,
) -> AsyncIterator[str]:
    """Relay hub payloads as they arrive and poll events recorded by workers."""

    cursor_after = after or datetime.now(UTC)
    cursor_after_event_id: Optional[UUID] = None
    loop = asyncio.get_running_loop()
    last_keepalive = loop.time()
    next_poll = loop.time()
    async with hub.subscribe(user_id) as queue:
        while True:
            if await request.is_disconnected():
                break
            try:
                data = await asyncio.wait_for(
                    queue.get(), timeout=max(0.0, next_poll - loop.time())
                )
            except asyncio.TimeoutError:
                data = None
            if data is not None:
                yield _format_thread_update(data.to_wire())
                last_keepalive = loop.time()
                continue

            next_poll = loop.time() + poll_seconds
            try:
                async with session_factory() as session:
                    events = await ThreadRepository(session).list_events(
                        user_id=user_id,
                        after=cursor_after,
                        after_event_id=cursor_after_event_id,
                    )
            except Exception as exc:  # pragma: no cover - thin mapping layer
                logger.exception(
                    "Reading thread events failed", extra={"user_id": user_id}
                )
                detail = {"code": "thread_events_unavailable", "message": str(exc)}
                yield (
                    "event: error\n"
                    f"data: {json.dumps(detail, ensure_ascii=True)}\n\n"
                )
                break

            for event in events:
                yield _format_thread_update(event.payload)
                cursor_after = event.created_at
                cursor_after_event_id = event.id
            if events:
                last_keepalive = loop.time()
                continue

            now = loop.time()
            if now - last_keepalive >= keepalive_seconds:
                yield ": keep-alive\n\n"
                last_keepalive = now


@router.get("/events/stream")
async def stream_thread_events(
    request: Request,
    hub: ThreadBroadcastHub = Depends(_get_hub),
    session_factory: Callable[[], AsyncSession] = Depends(_get_session_factory),
    user_id: str = Depends(_get_user_id),
) -> StreamingResponse:
    """Stream the caller's thread change notifications as Server-Sent Events."""

    queue_settings = settings.thread_queue
    return StreamingResponse(
        _iter_thread_events(
            request,
            user_id=user_id,
            hub=hub,
            session_factory=session_factory,
            poll_seconds=queue_settings.event_poll_interval_seconds,
            keepalive_seconds=queue_settings.stream_keepalive_seconds,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/events/should-refetch", response_model=ShouldRefetchResponse)
async def evaluate_should_refetch(
    payload: ShouldRefetchRequest,
    _user_id: str = Depends(_get_user_id),
) -> ShouldRefetchResponse:
    """Evaluate the list refetch predicate for clients that cannot run it."""

    result = should_refetch(
        payload.thread_id,
        payload.event,
        set(payload.known_thread_ids),
        payload.archived,
        payload.automation_id,
    )
    return ShouldRefetchResponse(should_refetch=result)


# ----------------------------------------------------------------------
# Single-thread routes
# ----------------------------------------------------------------------


@router.get("/{thread_id}", response_model=ThreadModel)
async def get_thread(
    thread_id: UUID,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> ThreadModel:
    try:
        thread = await service.get_thread(user_id=user_id, thread_id=thread_id)
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return _serialize_thread(thread)


@router.patch("/{thread_id}", response_model=ThreadModel)
async def update_thread(
    thread_id: UUID,
    payload: UpdateThreadRequest,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> ThreadModel:
    """Archive, unarchive or move a thread in and out of the backlog."""

    if payload.archived is None and payload.is_backlog is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "invalid_thread_request",
                "message": "archived or isBacklog must be provided.",
            },
        )
    try:
        thread = await service.update_thread(
            user_id=user_id,
            thread_id=thread_id,
            archived=payload.archived,
            is_backlog=payload.is_backlog,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return _serialize_thread(thread)


@router.delete("/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_thread(
    thread_id: UUID,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> Response:
    try:
        await service.delete_thread(user_id=user_id, thread_id=thread_id)
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{thread_id}/chats/{thread_chat_id}/messages",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def append_messages(
    thread_id: UUID,
    thread_chat_id: str,
    payload: AppendMessagesRequest,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> Response:
    """Append chat content to one attempt of a thread."""

    try:
        await service.append_messages(
            user_id=user_id,
            thread_id=thread_id,
            thread_chat_id=thread_chat_id,
            messages=payload.messages,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{thread_id}/chats/{thread_chat_id}/transition",
    response_model=TransitionResponse,
)
async def transition_thread_chat(
    thread_id: UUID,
    thread_chat_id: str,
    payload: TransitionRequest,
    service: ThreadLifecycleService = Depends(_get_service),
    user_id: str = Depends(_get_user_id),
) -> TransitionResponse:
    """Compare-and-set the status of one attempt.

    ``applied`` is false when the attempt was no longer in ``fromStatus``;
    callers treat that as a lost race, not an error.
    """

    reattempt_queue_at = (
        payload.reattempt_queue_at
        if "reattempt_queue_at" in payload.model_fields_set
        else UNSET
    )
    try:
        result = await service.transition(
            user_id=user_id,
            thread_id=thread_id,
            thread_chat_id=thread_chat_id,
            from_status=payload.from_status,
            to_status=payload.to_status,
            reattempt_queue_at=reattempt_queue_at,
        )
    except Exception as exc:  # pragma: no cover - thin mapping layer
        raise _to_http_exception(exc) from exc
    return TransitionResponse(applied=result.applied)
