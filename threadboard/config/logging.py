import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

_RESERVED_LOG_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

# Identity of the thread a record is about; emitted at the top level.
THREAD_CONTEXT_FIELDS = (
    "user_id",
    "thread_id",
    "thread_chat_id",
    "from_status",
    "to_status",
)

PLAIN_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per record, thread identity lifted out of ``extra``."""

    def __init__(self, *, service: str = "threadboard") -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "service": self._service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS:
                continue
            if key in THREAD_CONTEXT_FIELDS:
                payload[key] = value
            else:
                extras[key] = value
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(
    level: Optional[str] = None,
    structured: Optional[bool] = None,
    *,
    service: str = "threadboard",
) -> None:
    """Install a stdout handler on the root logger.

    ``level`` and ``structured`` default to ``settings.log_level`` and
    ``settings.structured_logs``.
    """
    from threadboard.config.settings import settings

    level = level or settings.log_level
    if structured is None:
        structured = settings.structured_logs

    formatter: logging.Formatter
    if structured:
        formatter = StructuredLogFormatter(service=service)
    else:
        formatter = logging.Formatter(PLAIN_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[handler],
        force=True,
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured with level: %s", level)
