import pytest
from pydantic import ValidationError

from threadboard.config.settings import (
    AppSettings,
    CelerySettings,
    DatabaseSettings,
    ThreadQueueSettings,
)
from threadboard.utils.env_bool import env_to_bool


def test_thread_queue_defaults():
    queue = ThreadQueueSettings()

    assert queue.max_concurrent_threads == 3
    assert queue.stalled_cutoff_seconds == 3600
    assert queue.poll_interval_seconds == 30.0
    assert queue.stalled_sweep_interval_seconds == 300.0
    assert queue.broadcast_queue_size == 256
    assert queue.event_poll_interval_seconds == 1.0
    assert queue.event_retention_seconds == 86400


def test_thread_queue_reads_prefixed_env(monkeypatch):
    monkeypatch.setenv("THREAD_QUEUE_MAX_CONCURRENT_THREADS", "5")
    monkeypatch.setenv("THREAD_QUEUE_STALLED_CUTOFF_SECONDS", "600")

    queue = ThreadQueueSettings()

    assert queue.max_concurrent_threads == 5
    assert queue.stalled_cutoff_seconds == 600


def test_thread_queue_rejects_non_positive_limits():
    with pytest.raises(ValidationError):
        ThreadQueueSettings(max_concurrent_threads=0)
    with pytest.raises(ValidationError):
        ThreadQueueSettings(event_poll_interval_seconds=0)


def test_celery_accept_content_splits_csv():
    celery = CelerySettings(accept_content="json, msgpack")

    assert celery.accept_content == ("json", "msgpack")


def test_result_backend_defaults_to_database():
    app_settings = AppSettings(
        database=DatabaseSettings(
            POSTGRES_HOST="db",
            POSTGRES_USER="u",
            POSTGRES_PASSWORD="p",
            POSTGRES_DB="threads",
            POSTGRES_PORT=5433,
        ),
        celery=CelerySettings(result_backend=None),
    )

    assert app_settings.celery.result_backend == "db+postgresql://u:p@db:5433/threads"
    assert app_settings.database.POSTGRES_URL == (
        "postgresql+asyncpg://u:p@db:5433/threads"
    )


def test_explicit_result_backend_is_kept():
    app_settings = AppSettings(celery=CelerySettings(result_backend="redis://cache/1"))

    assert app_settings.celery.result_backend == "redis://cache/1"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("", False), ("yes", True), ("0", False), ("garbage", False), (True, True)],
)
def test_structured_logs_flag_coercion(raw, expected):
    assert AppSettings(structured_logs=raw).structured_logs is expected


def test_env_to_bool_uses_default_for_blank_values():
    assert env_to_bool(None, default=True) is True
    assert env_to_bool("", default=True) is True
    assert env_to_bool(" On ") is True
    assert env_to_bool("off", default=True) is False
