"""
Global pytest configuration and fixtures for deployment handler tests.
"""

import asyncio
import json
import os
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

# Keep the developer's environment out of the settings under test
for _name in list(os.environ):
    if _name.upper().startswith(("CLOUDIFY__", "INVENTORY__", "CONSUL__", "AUTH")):
        del os.environ[_name]
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "console")

from deployment_handler.cloudify.client import CloudifyClient  # noqa: E402
from deployment_handler.cloudify.models import Execution  # noqa: E402
from deployment_handler.context import RequestContext  # noqa: E402
from deployment_handler.errors import DispatcherError, ErrorKind, LogCode  # noqa: E402
from deployment_handler.inventory.client import InventoryClient  # noqa: E402

CLOUDIFY_URL = "https://cm.example.org/api/v2.1"
INVENTORY_URL = "https://inventory.example.org"


def json_response(status: int, body: Any = None, **kwargs: Any) -> httpx.Response:
    """Build an httpx response with a JSON body."""
    if body is None:
        return httpx.Response(status, **kwargs)
    return httpx.Response(status, content=json.dumps(body).encode(), headers={"content-type": "application/json"})


def cloudify_error(status: int, error_code: str, message: str = "refused") -> DispatcherError:
    """Error as CloudifyClient raises it for an API error response."""
    return DispatcherError(
        f"Status {status} from cloudify-manager API -- error code: {error_code} -- message: {message}",
        status=status if status < 500 else 502,
        kind=ErrorKind.API,
        log_code=LogCode.CLOUDIFY_API,
        target="cloudify-manager",
        backend_code=error_code,
    )


class RecordingHandler:
    """MockTransport handler answering from a list of (method, path prefix, responder) routes."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: list[tuple[str, str, Callable[[httpx.Request], httpx.Response]]] = []

    def on(self, method: str, path: str, responder: Any) -> "RecordingHandler":
        if isinstance(responder, httpx.Response):
            response = responder
            responder = lambda request: response  # noqa: E731
        elif isinstance(responder, list):
            queue = list(responder)
            responder = lambda request: queue.pop(0) if len(queue) > 1 else queue[0]  # noqa: E731
        self._routes.append((method, path, responder))
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, path, responder in self._routes:
            if request.method == method and request.url.path.endswith(path):
                return responder(request)
        return json_response(404, {"message": "no route", "error_code": "not_found_error"})

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.endswith(path)]


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(request_id="req-1", method="PUT", path="/dcae-deployments/dep1", tenant="tenant-a")


@pytest.fixture
def cloudify_handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def cloudify_client(cloudify_handler: RecordingHandler) -> CloudifyClient:
    """CloudifyClient with no poll delays talking to a MockTransport."""
    return CloudifyClient(
        base_url=CLOUDIFY_URL,
        username="admin",
        password="secret",
        tenant="default_tenant",
        page_size=2,
        creation_poll_interval=0,
        creation_max_attempts=3,
        workflow_poll_interval=0,
        workflow_max_attempts=3,
        transport=httpx.MockTransport(cloudify_handler),
    )


@pytest.fixture
def inventory_handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def inventory_client(inventory_handler: RecordingHandler) -> InventoryClient:
    return InventoryClient(base_url=INVENTORY_URL, transport=httpx.MockTransport(inventory_handler))


class FakeCloudify:
    """
    Stand-in for CloudifyClient's execution calls.

    Records the order in which executions start and how many are in flight
    per deployment. ``start_errors`` scripts failures of the start call.
    """

    def __init__(self) -> None:
        self.started: list[tuple[str, str, dict | None]] = []
        self.in_flight: dict[str, int] = {}
        self.max_in_flight: dict[str, int] = {}
        self.start_errors: dict[tuple[str, str], list[Exception]] = {}
        self.wait_errors: dict[str, Exception] = {}
        self.start_attempts = 0
        # When set, executions stay in flight until the event fires
        self.release: asyncio.Event | None = None
        self._executions: dict[str, tuple[str, str]] = {}

    async def initiate_workflow_execution(self, ctx, deployment_id, workflow_id, parameters=None):
        self.start_attempts += 1
        errors = self.start_errors.get((deployment_id, workflow_id))
        if errors:
            raise errors.pop(0)
        execution_id = f"exec-{len(self.started) + 1}"
        self.started.append((deployment_id, workflow_id, parameters))
        self._executions[execution_id] = (deployment_id, workflow_id)
        self.in_flight[deployment_id] = self.in_flight.get(deployment_id, 0) + 1
        self.max_in_flight[deployment_id] = max(
            self.max_in_flight.get(deployment_id, 0), self.in_flight[deployment_id]
        )
        return execution_id

    async def wait_for_workflow_execution(self, ctx, execution_id):
        deployment_id, workflow_id = self._executions[execution_id]
        if self.release is not None:
            await self.release.wait()
        for _ in range(3):
            await asyncio.sleep(0)
        self.in_flight[deployment_id] -= 1
        if workflow_id in self.wait_errors:
            raise self.wait_errors[workflow_id]
        return Execution(
            id=execution_id, status="terminated", workflow_id=workflow_id, deployment_id=deployment_id
        )


@pytest.fixture
def fake_cloudify() -> FakeCloudify:
    return FakeCloudify()


@pytest.fixture
def mock_inventory() -> MagicMock:
    """Mock InventoryClient for testing."""
    inventory = MagicMock(spec=InventoryClient)
    inventory.verify_unique_deployment_id = AsyncMock(return_value=None)
    inventory.get_blueprint_by_type = AsyncMock()
    inventory.add_service = AsyncMock(return_value=None)
    inventory.delete_service = AsyncMock(return_value=None)
    inventory.get_services_by_type = AsyncMock(return_value=[])
    inventory.is_service_healthy = AsyncMock(return_value=True)
    return inventory
