"""
Structured logging setup using structlog directly.

Besides ordinary debug/info events, operators rely on three record types,
each written to its own named logger:

- ``audit``: one per top-level request
- ``error``: one per normalized error
- ``metrics``: one per outbound call to a downstream system
"""

import logging
import sys
from datetime import UTC, datetime
from typing import Any

import structlog

from deployment_handler.context import RequestContext
from deployment_handler.errors import DispatcherError, describe
from deployment_handler.settings import settings


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Setup structured logging with structlog.

    Uses settings from centralized configuration unless overridden.
    """
    level = (level or settings.observability.log_level.value).upper()
    log_format = log_format or settings.observability.log_format

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a structured logger."""
    return structlog.get_logger(name)


def _single_line(text: str | None) -> str | None:
    return text.replace("\n", " ") if text else text


def log_audit(ctx: RequestContext, status: int, detail: str | None = None) -> None:
    """Record the outcome of a top-level request."""
    structlog.get_logger("audit").info(
        "request.audit",
        request_id=ctx.request_id,
        begin=ctx.started_at.isoformat(),
        end=datetime.now(UTC).isoformat(),
        service_name=ctx.service_name,
        client_ip=ctx.client_ip,
        status_code="COMPLETE" if status < 300 else "ERROR",
        response_code=status,
        elapsed_ms=ctx.elapsed_ms(),
        detail=_single_line(detail),
    )


def log_error(
    error: DispatcherError,
    ctx: RequestContext | None = None,
    category: str = "ERROR",
) -> None:
    """Record a normalized error with its fixed description."""
    structlog.get_logger("error").error(
        "request.error",
        request_id=ctx.request_id if ctx else None,
        service_name=ctx.service_name if ctx else None,
        partner=ctx.client_ip if ctx else None,
        category=category,
        error_kind=error.kind.value,
        code=error.log_code,
        description=describe(error.log_code),
        target_entity=error.target,
        status=error.status,
        message=_single_line(error.message),
    )


def log_warning(error: DispatcherError, ctx: RequestContext | None = None) -> None:
    log_error(error, ctx, category="WARN")


def log_metrics(
    ctx: RequestContext | None,
    *,
    target_entity: str,
    target_service: str | None,
    response_code: int,
    complete: bool,
    elapsed_ms: int,
    detail: str | None = None,
) -> None:
    """Record one outbound call to a downstream system."""
    structlog.get_logger("metrics").info(
        "downstream.call",
        request_id=ctx.request_id if ctx else "no incoming request",
        service_name=ctx.service_name if ctx else "no incoming request",
        target_entity=target_entity,
        target_service=target_service,
        status_code="COMPLETE" if complete else "ERROR",
        response_code=response_code,
        elapsed_ms=elapsed_ms,
        detail=_single_line(detail),
    )


# Initialize on import
setup_logging()

logger = get_logger(__name__)
