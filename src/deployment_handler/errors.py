"""
Dispatcher error taxonomy.

Every failure that reaches a caller or a log is a :class:`DispatcherError`.
Raw ``httpx`` failures and downstream error payloads are converted here so
the rest of the service only ever sees one error shape.
"""

import json
from enum import Enum, IntEnum
from typing import Any

import httpx


class ErrorKind(str, Enum):
    """Where a failure originated."""

    SYSTEM = "system"  # could not reach the downstream system
    API = "api"  # downstream responded with an error status
    VALIDATION = "validation"  # caller input rejected


class LogCode(IntEnum):
    """Stable codes written to the error log."""

    INVENTORY_COMMUNICATION = 201
    CLOUDIFY_COMMUNICATION = 202
    INVENTORY_API = 501
    CLOUDIFY_API = 502
    SERVER_INITIALIZATION = 551
    STARTUP = 552
    EXECUTE_WORKFLOW = 553
    UNKNOWN = 999


ERROR_DESCRIPTIONS: dict[int, str] = {
    LogCode.INVENTORY_COMMUNICATION: "Inventory communication error",
    LogCode.CLOUDIFY_COMMUNICATION: "Cloudify Manager communication error",
    LogCode.INVENTORY_API: "Inventory API error",
    LogCode.CLOUDIFY_API: "Cloudify Manager API error",
    LogCode.SERVER_INITIALIZATION: "HTTP(S) Server initialization error",
    LogCode.STARTUP: "Dispatcher start-up error",
    LogCode.EXECUTE_WORKFLOW: "Execute workflow on deployment error",
    LogCode.UNKNOWN: "Unknown error",
}

TARGET_CLOUDIFY = "cloudify-manager"
TARGET_INVENTORY = "dcae-inventory"
TARGET_CONSUL = "consul"
TARGET_SELF = "deployment-handler"


def describe(log_code: int) -> str:
    """Look up the fixed description for a log code."""
    return ERROR_DESCRIPTIONS.get(log_code, "no description available")


class DispatcherError(Exception):
    """
    Normalized error.

    Attributes:
        message: Human-readable error message
        status: HTTP status this service answers with
        kind: system, api or validation
        log_code: Code used for the error log description lookup
        target: Downstream system involved, if any
        backend_code: ``error_code`` reported by the downstream system, if any
    """

    def __init__(
        self,
        message: str | None = None,
        status: int = 500,
        kind: ErrorKind = ErrorKind.SYSTEM,
        log_code: int = LogCode.UNKNOWN,
        target: str = "",
        backend_code: str | None = None,
    ) -> None:
        self.message = message or "no error information"
        self.status = status
        self.kind = kind
        self.log_code = int(log_code)
        self.target = target
        self.backend_code = backend_code
        super().__init__(self.message)

    @property
    def description(self) -> str:
        return describe(self.log_code)

    def to_dict(self) -> dict[str, Any]:
        """Body of the HTTP error response."""
        return {"status": self.status, "message": self.message}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(status={self.status}, kind={self.kind.value}, "
            f"log_code={self.log_code}, target={self.target!r}, message={self.message!r})"
        )


class RequestValidationError(DispatcherError):
    """Caller input is malformed or conflicts with existing state."""

    def __init__(self, message: str, status: int = 400, log_code: int = LogCode.UNKNOWN) -> None:
        super().__init__(message, status=status, kind=ErrorKind.VALIDATION, log_code=log_code)


class MaxRepetitionsError(DispatcherError):
    """A poll loop ran out of attempts while the result was still pending."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"maximum repetitions reached: {attempts}",
            status=504,
            kind=ErrorKind.SYSTEM,
        )
        self.attempts = attempts


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def normalize_transport_error(
    exc: Exception,
    *,
    target: str,
    log_code: int,
) -> DispatcherError:
    """Map a failure to reach ``target`` (DNS, connect, timeout) to a system error."""
    detail = str(exc) or type(exc).__name__
    return DispatcherError(
        f"Error communicating with {target}: {detail}",
        status=504,
        kind=ErrorKind.SYSTEM,
        log_code=log_code,
        target=target,
    )


def normalize_response(
    response: httpx.Response,
    *,
    target: str,
    log_code: int,
    pass_client_errors: bool = True,
) -> DispatcherError:
    """
    Map a non-2xx response from ``target`` to an api error.

    The body is parsed opportunistically as JSON to recover ``message`` and
    ``error_code``. 4xx statuses pass through unless ``pass_client_errors`` is
    False; 5xx statuses are always reported as 502 so a downstream failure
    never reads as a failure of this service.
    """
    status = response.status_code
    body = response.text
    backend_code = None
    message = f"Status {status} from {target} API"

    if body:
        parsed = _parse_json(body)
        if isinstance(parsed, dict):
            backend_code = parsed.get("error_code")
            backend_message = parsed.get("message") or f"unknown {target} API error"
            message += f" -- error code: {backend_code or 'UNKNOWN'} -- message: {backend_message}"
        else:
            message += f" -- message: {body}"

    if status > 499 or not pass_client_errors:
        status = 502

    return DispatcherError(
        message,
        status=status,
        kind=ErrorKind.API,
        log_code=log_code,
        target=target,
        backend_code=backend_code,
    )
