"""
Structured logging for the order fulfillment service.

Correlation identifiers live in structlog's context variables: the request
ID (or Celery task ID) for the whole unit of work and, while an order is
being worked on, its ID and order number. Webhook reconciliation, event
handlers and wholesaler dispatch all log through the same context, so one
``order_id`` search shows the full path of an order.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional
from uuid import uuid4

import structlog
from structlog.types import Processor

from src.core.config import get_settings

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "botocore", "stripe", "asyncio")


def configure_logging() -> None:
    """
    Configure structlog on top of the standard library root logger.

    Development gets the coloured console renderer; every other environment
    emits one JSON object per line.
    """
    settings = get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Bind the correlation ID for the current request or task.

    Args:
        request_id: Incoming ``X-Request-ID`` or task ID; a UUID is
            generated when missing

    Returns:
        The bound request ID
    """
    request_id = request_id or str(uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def get_request_id() -> str:
    return structlog.contextvars.get_contextvars().get("request_id", "")


def clear_context() -> None:
    """Drop every bound identifier at the end of a request."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def bind_order_context(order_id: Any, order_number: Optional[str] = None) -> Iterator[None]:
    """
    Attach an order to every log event emitted inside the block.

    Keys passed explicitly to a log call take precedence, and the previous
    order is restored on exit so a webhook can hand over to the dispatcher
    inside its own block.

    Example:
        >>> with bind_order_context(order.id, order.order_number):
        ...     logger.info("Wholesaler notified", item_id=str(item.id))
    """
    identifiers = {"order_id": str(order_id)}
    if order_number:
        identifiers["order_number"] = order_number

    with structlog.contextvars.bound_contextvars(**identifiers):
        yield


@contextmanager
def log_performance(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    slow_threshold_ms: float = 500,
    **context: Any,
) -> Iterator[None]:
    """
    Log how long a block took; slow blocks are logged as warnings.

    Example:
        >>> with log_performance(logger, "gateway_payment_lookup", gateway_payment_id="pi_123"):
        ...     payment = await client.fetch_payment("pi_123")
    """
    started = time.perf_counter()

    def elapsed_ms() -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    try:
        yield
    except Exception as e:
        logger.error(
            "Operation failed",
            operation=operation,
            duration_ms=elapsed_ms(),
            error_type=type(e).__name__,
            **context,
        )
        raise

    duration_ms = elapsed_ms()
    log = logger.warning if duration_ms > slow_threshold_ms else logger.info
    log("Operation completed", operation=operation, duration_ms=duration_ms, **context)
