from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import json
import logging
from typing import Iterator
from uuid import uuid4

from fabricsec.core.config import get_settings


# Request-scoped; every task gets its own copy so ids never bleed across requests.
_correlation_id: ContextVar[str | None] = ContextVar("fabricsec_correlation_id", default=None)

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


def new_correlation_id() -> str:
    return f"corr_{uuid4().hex}"


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    # Bind a correlation id for the duration of one logical request.
    resolved = correlation_id or get_correlation_id() or new_correlation_id()
    token = _correlation_id.set(resolved)
    try:
        yield resolved
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str | None = None) -> None:
    # Idempotent so the API factory and scripts can both call it.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    for handler in root.handlers:
        if getattr(handler, "_fabricsec", False):
            return
    handler = logging.StreamHandler()
    handler._fabricsec = True  # type: ignore[attr-defined]
    handler.addFilter(CorrelationIdFilter())
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)
