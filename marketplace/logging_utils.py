"""Structured JSON logging with request, actor, flow and booking context."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

_request_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_actor_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "actor_id", default=None
)
_flow_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "flow_id", default=None
)
_booking_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "booking_id", default=None
)

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str | None]] = {
    "request_id": _request_id_ctx_var,
    "actor_id": _actor_id_ctx_var,
    "flow_id": _flow_id_ctx_var,
    "booking_id": _booking_id_ctx_var,
}
_CONTEXT_FIELDS = tuple(_CONTEXT_VARS)

_STANDARD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
    }
)


class RequestContextFilter(logging.Filter):
    """Inject request, flow and booking context into log records.

    Values passed explicitly through ``extra`` win over the bound context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, ctx_var in _CONTEXT_VARS.items():
            if getattr(record, key, None) is None:
                setattr(record, key, ctx_var.get())
        return True


class JSONLogFormatter(logging.Formatter):
    """Serialize log records as one JSON object per line."""

    def __init__(self) -> None:  # pragma: no cover - trivial
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            log_entry[key] = record.__dict__.get(key)

        for key, value in record.__dict__.items():
            if key in _CONTEXT_FIELDS or key.startswith("_") or key in _STANDARD_ATTRIBUTES:
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the root logger for structured JSON output."""

    global _configured
    if _configured:  # pragma: no cover - defensive
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers = []
        logger.propagate = True

    _configured = True


def set_actor_context(actor_id: UUID | str | None) -> None:
    """Bind the acting profile to the current logging context."""

    _actor_id_ctx_var.set(str(actor_id) if actor_id is not None else None)


def get_current_actor() -> str:
    """Return the actor id bound to the current context."""

    return _actor_id_ctx_var.get() or "anonymous"


def get_request_id() -> str:
    """Return the request id bound to the current context."""

    return _request_id_ctx_var.get() or "unknown"


@contextmanager
def booking_log_context(
    *, flow_id: str | None = None, booking_id: UUID | str | None = None
) -> Iterator[None]:
    """Tag every record logged inside the block with the flow and booking ids."""

    tokens = []
    if flow_id is not None:
        tokens.append((_flow_id_ctx_var, _flow_id_ctx_var.set(str(flow_id))))
    if booking_id is not None:
        tokens.append((_booking_id_ctx_var, _booking_id_ctx_var.set(str(booking_id))))
    try:
        yield
    finally:
        for ctx_var, token in reversed(tokens):
            ctx_var.reset(token)


__all__ = [
    "booking_log_context",
    "configure_logging",
    "get_current_actor",
    "get_request_id",
    "set_actor_context",
    "_actor_id_ctx_var",
    "_request_id_ctx_var",
]
