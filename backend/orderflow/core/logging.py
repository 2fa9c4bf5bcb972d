"""
Structured logging for the order lifecycle backend.

Every log line is a structlog event. Three correlation values travel with
the current task through context variables: the HTTP request, the acting
user and the order being edited. Development renders coloured console
output; every other environment renders one JSON object per line.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from uuid import uuid4

import structlog
from structlog.types import EventDict, Processor

from orderflow.core.config import get_settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
actor_id_ctx: ContextVar[Optional[str]] = ContextVar("actor_id", default=None)
order_id_ctx: ContextVar[Optional[str]] = ContextVar("order_id", default=None)

_CORRELATION_FIELDS: tuple[tuple[str, ContextVar], ...] = (
    ("request_id", request_id_ctx),
    ("actor_id", actor_id_ctx),
    ("order_id", order_id_ctx),
)

# Third-party loggers that are too chatty at the application level
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "asyncio": logging.WARNING,
    "redis": logging.WARNING,
}


def add_correlation(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Copy request, actor and order ids from context into the event.

    A value passed explicitly on the log call wins over the context, so an
    engine logging about another order keeps that order's id.
    """
    for key, var in _CORRELATION_FIELDS:
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_logger_name(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["logger"] = logger.name
    return event_dict


def _renderer(development: bool) -> Processor:
    if development:
        return structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """
    Configure structlog and the standard library root logger.

    Safe to call more than once; the last call wins.
    """
    settings = get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        add_logger_name,
        add_correlation,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _renderer(settings.is_development),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=not settings.is_test,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )
    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Bind the request id for the current task.

    Args:
        request_id: Incoming ``X-Request-ID`` value; a UUID4 is generated
            when it is missing or blank

    Returns:
        The request id that was bound
    """
    request_id = (request_id or "").strip() or str(uuid4())
    request_id_ctx.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_ctx.get()


def set_actor_id(actor_id: Optional[str]) -> None:
    actor_id_ctx.set(actor_id)


def bind_order_context(order_id: Optional[str]) -> None:
    """Bind the order being edited so every log line carries it."""
    order_id_ctx.set(order_id)


def clear_context() -> None:
    """Reset all correlation values at the end of a request."""
    request_id_ctx.set("")
    actor_id_ctx.set(None)
    order_id_ctx.set(None)


SLOW_OPERATION_MS = 500.0


@contextmanager
def log_performance(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    **context: Any,
) -> Iterator[None]:
    """
    Time a block and log its duration.

    Completion is logged at info, or warning once it exceeds
    ``SLOW_OPERATION_MS``. A raising block is logged at error and the
    exception propagates unchanged.

    Example:
        >>> with log_performance(logger, "order_transition", order_id=oid):
        ...     await engine.transition(order, target, context)
    """
    started = time.perf_counter()
    try:
        yield
    except BaseException as e:
        logger.error(
            "Operation failed",
            operation=operation,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            error_type=type(e).__name__,
            **context,
        )
        raise

    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    log = logger.warning if duration_ms > SLOW_OPERATION_MS else logger.info
    log("Operation completed", operation=operation, duration_ms=duration_ms, **context)
