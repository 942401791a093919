from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
import enum
import json
import logging
from typing import Any

# Fields every attendance log line is keyed by, emitted before any other extra.
CONTEXT_FIELDS = ("request_id", "actor_id", "employee_id", "day", "kind")

_STANDARD_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_log_context: ContextVar[dict[str, Any]] = ContextVar("attendance_log_context", default={})


def current_log_context() -> dict[str, Any]:
    return dict(_log_context.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Bind context fields to every log line written inside the block.

    Nested blocks add to the outer context; None values are ignored.
    """
    merged = {**_log_context.get(), **{key: value for key, value in fields.items() if value is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def _json_default(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
        }
        context = _log_context.get()
        for key in CONTEXT_FIELDS:
            value = extras.pop(key, context.get(key))
            if value is not None:
                payload[key] = value
        payload.update(extras)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default, ensure_ascii=True)


def setup_json_logging(level: str | int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)
