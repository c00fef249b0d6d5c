"""Per-request context carried into background work and outbound calls."""

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

REQUEST_ID_HEADER = "X-ECOMP-RequestID"
TENANT_HEADER = "Tenant"


@dataclass(frozen=True)
class RequestContext:
    """
    What outbound calls and log records need to know about the originating request.

    A context outlives its HTTP request: background pipelines and queued
    executions keep using it after the response has been sent.
    """

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    method: str | None = None
    path: str | None = None
    client_ip: str | None = None
    tenant: str | None = None
    force: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_monotonic: float = field(default_factory=time.monotonic)

    @property
    def service_name(self) -> str:
        """Method and path identify the operation being performed."""
        if self.method and self.path:
            return f"{self.method} {self.path}"
        return "no incoming request"

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def with_force(self, force: bool) -> "RequestContext":
        return replace(self, force=force)


def background_context() -> RequestContext:
    """Context for work that has no incoming request behind it."""
    return RequestContext(request_id="no incoming request")
