"""Celery application configuration for the thread lifecycle sweeps."""

from __future__ import annotations

from celery import Celery

from threadboard.config.settings import settings

CELERY_NAMESPACE = "threadboard.workflows.threads"
_TASK_IMPORT = "threadboard.workflows.threads.tasks"

TASK_PROCESS_READY_QUEUES = "threads.process_ready_queues"
TASK_RUN_SCHEDULED = "threads.run_scheduled_threads"
TASK_STOP_STALLED = "threads.stop_stalled_threads"
TASK_PRUNE_EVENTS = "threads.prune_thread_events"


def build_beat_schedule() -> dict[str, dict[str, object]]:
    """Periodic entries for the queue, schedule, stall and event-retention sweeps."""

    queue_settings = settings.thread_queue
    return {
        "process-ready-queues": {
            "task": TASK_PROCESS_READY_QUEUES,
            "schedule": queue_settings.poll_interval_seconds,
        },
        "run-scheduled-threads": {
            "task": TASK_RUN_SCHEDULED,
            "schedule": queue_settings.poll_interval_seconds,
        },
        "stop-stalled-threads": {
            "task": TASK_STOP_STALLED,
            "schedule": queue_settings.stalled_sweep_interval_seconds,
        },
        "prune-thread-events": {
            "task": TASK_PRUNE_EVENTS,
            "schedule": queue_settings.event_prune_interval_seconds,
        },
    }


def create_celery_app() -> Celery:
    """Instantiate a Celery application configured for thread lifecycle sweeps."""

    app = Celery(CELERY_NAMESPACE)
    app.conf.update(
        broker_url=settings.celery.broker_url,
        result_backend=settings.celery.result_backend,
        task_default_queue=settings.celery.default_queue,
        task_serializer=settings.celery.task_serializer,
        result_serializer=settings.celery.result_serializer,
        accept_content=list(settings.celery.accept_content),
        imports=[_TASK_IMPORT],
        task_acks_late=settings.celery.task_acks_late,
        worker_prefetch_multiplier=settings.celery.worker_prefetch_multiplier,
        result_expires=settings.celery.result_expires,
        beat_schedule=build_beat_schedule(),
    )
    return app


celery_app = create_celery_app()


__all__ = [
    "CELERY_NAMESPACE",
    "TASK_PRUNE_EVENTS",
    "TASK_PROCESS_READY_QUEUES",
    "TASK_RUN_SCHEDULED",
    "TASK_STOP_STALLED",
    "build_beat_schedule",
    "celery_app",
    "create_celery_app",
]
