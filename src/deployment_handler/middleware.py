"""
Request context middleware.

Every request gets a :class:`RequestContext`: the caller's
``X-ECOMP-RequestID`` (or a fresh one), tenant and start time. The id is
echoed back on the response.
"""

import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from deployment_handler.context import REQUEST_ID_HEADER, TENANT_HEADER, RequestContext

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request context to ``request.state`` and time the request."""

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        ctx = RequestContext(
            request_id=request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4()),
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
            tenant=request.headers.get(TENANT_HEADER),
        )
        request.state.context = ctx

        logger.info(
            "http.request.start",
            method=ctx.method,
            path=ctx.path,
            client_ip=ctx.client_ip,
            request_id=ctx.request_id,
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = ctx.request_id

        logger.info(
            "http.request.complete",
            method=ctx.method,
            path=ctx.path,
            status_code=response.status_code,
            duration_ms=ctx.elapsed_ms(),
            request_id=ctx.request_id,
        )
        return response
