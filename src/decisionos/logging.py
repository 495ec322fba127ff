"""Structured logging helpers."""

from __future__ import annotations

import logging
from typing import cast

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars
from structlog.typing import EventDict, WrappedLogger

TENANT_LOG_FIELDS = frozenset({"household_key"})


def drop_tenant_fields(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Strip household keys from an event before it is rendered."""
    for key in TENANT_LOG_FIELDS:
        event_dict.pop(key, None)
    return event_dict


def configure_logging(level: str) -> None:
    """Configure structlog to write one JSON object per event to stderr."""
    numeric_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            drop_tenant_fields,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(*, request_id: str, session_id: str | None = None) -> None:
    """Bind request-scoped identifiers into the logging context.

    Household keys are never bound; log lines carry no tenant identifiers.
    """
    if session_id is None:
        bind_contextvars(request_id=request_id)
    else:
        bind_contextvars(request_id=request_id, session_id=session_id)


def clear_logging_context() -> None:
    clear_contextvars()


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a structured logger."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))
