"""
Base HTTP client for downstream systems.

Owns the ``httpx.AsyncClient``, writes one metrics record per call, and turns
every transport failure or non-2xx response into a :class:`DispatcherError`.
"""

import time
from collections.abc import Collection
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from deployment_handler.context import RequestContext
from deployment_handler.errors import (
    DispatcherError,
    ErrorKind,
    LogCode,
    normalize_response,
    normalize_transport_error,
)
from deployment_handler.logging import log_metrics

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class DownstreamClient:
    """HTTP client for one downstream system."""

    target: str = "downstream"
    system_log_code: int = LogCode.UNKNOWN
    api_log_code: int = LogCode.UNKNOWN
    # False recasts every error status to 502
    pass_client_errors: bool = True

    def __init__(
        self,
        base_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        verify_ssl: bool = True,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: API root of the downstream system
            username: Basic auth user
            password: Basic auth password
            verify_ssl: Whether to verify SSL certificates
            timeout: Request timeout in seconds
            transport: Alternative transport (used by tests)
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        return self.base_url is not None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            auth = None
            if self.username:
                auth = httpx.BasicAuth(self.username, self.password or "")

            self._client = httpx.AsyncClient(
                base_url=self.base_url or "",
                headers={"Accept": "*/*"},
                auth=auth,
                verify=self.verify_ssl,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )

        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _request_headers(self, ctx: RequestContext | None) -> dict[str, str]:
        """Headers added to every call; subclasses add tenant information."""
        if ctx is None:
            return {}
        return {"X-ECOMP-RequestID": ctx.request_id}

    async def _request(
        self,
        ctx: RequestContext | None,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: bytes | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        allow_statuses: Collection[int] = (),
    ) -> httpx.Response:
        """
        Make one HTTP request.

        Args:
            ctx: Context of the originating request
            method: HTTP method
            path: Path relative to the API root
            json: JSON body
            content: Raw body
            params: Query parameters
            headers: Extra headers
            allow_statuses: Error statuses returned to the caller instead of raised

        Returns:
            The response

        Raises:
            DispatcherError: On transport failure or an error status
        """
        client = await self._get_client()
        request_headers = self._request_headers(ctx)
        if headers:
            request_headers.update(headers)
        target_service = f"{method} {self.base_url}{path}"
        started = time.monotonic()

        try:
            response = await client.request(
                method,
                path,
                json=json,
                content=content,
                params=params,
                headers=request_headers,
            )
        except httpx.RequestError as exc:
            log_metrics(
                ctx,
                target_entity=self.target,
                target_service=target_service,
                response_code=500,
                complete=False,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                detail=str(exc),
            )
            logger.warning(
                "downstream.request.failed",
                target=self.target,
                path=path,
                error=str(exc),
                request_id=ctx.request_id if ctx else None,
            )
            raise normalize_transport_error(
                exc, target=self.target, log_code=self.system_log_code
            ) from exc

        complete = response.is_success
        log_metrics(
            ctx,
            target_entity=self.target,
            target_service=target_service,
            response_code=response.status_code,
            complete=complete,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            detail=None if complete else response.text,
        )

        if complete or response.status_code in allow_statuses:
            return response

        raise normalize_response(
            response,
            target=self.target,
            log_code=self.api_log_code,
            pass_client_errors=self.pass_client_errors,
        )

    def _invalid_response(self, what: str, detail: str) -> DispatcherError:
        return DispatcherError(
            f"Invalid response from {self.target} for {what}: {detail}",
            status=502,
            kind=ErrorKind.API,
            log_code=self.api_log_code,
            target=self.target,
        )

    def _decode(self, model: type[ModelT], response: httpx.Response, what: str) -> ModelT:
        """Decode a response body into ``model``, failing fast on shape mismatch."""
        try:
            payload = response.json()
        except ValueError as exc:
            raise self._invalid_response(what, "body is not JSON") from exc

        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise self._invalid_response(what, str(exc)) from exc
