"""FastAPI dependencies: request context, services and request checks."""

import secrets

from fastapi import Depends, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from deployment_handler.cloudify.client import CloudifyClient
from deployment_handler.context import RequestContext
from deployment_handler.deployments.service import DeploymentService
from deployment_handler.errors import RequestValidationError
from deployment_handler.inventory.client import InventoryClient
from deployment_handler.policy.reconciler import PolicyReconciler
from deployment_handler.settings import Settings, get_settings

basic_auth = HTTPBasic(auto_error=False)

JSON_CONTENT_TYPE = "application/json"


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if context is None:
        # Route reached without the context middleware (tests mounting routers directly)
        context = RequestContext(method=request.method, path=request.url.path)
        request.state.context = context
    return context


def get_deployment_service(request: Request) -> DeploymentService:
    return request.app.state.deployment_service


def get_policy_reconciler(request: Request) -> PolicyReconciler:
    return request.app.state.policy_reconciler


def get_cloudify_client(request: Request) -> CloudifyClient:
    return request.app.state.cloudify_client


def get_inventory_client(request: Request) -> InventoryClient:
    return request.app.state.inventory_client


def get_app_settings(request: Request) -> Settings:
    """Settings the application was started with (Consul may have completed them)."""
    return getattr(request.app.state, "settings", None) or get_settings()


def check_authorization(
    credentials: HTTPBasicCredentials | None = Depends(basic_auth),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Enforce HTTP basic auth when users are configured."""
    if not settings.auth:
        return
    if credentials is None or not credentials.username or not credentials.password:
        raise RequestValidationError("Authentication required", status=403)

    expected = settings.auth.get(credentials.username)
    if expected is None or not secrets.compare_digest(expected, credentials.password):
        raise RequestValidationError("Authentication required", status=403)


def require_json(request: Request) -> None:
    """PUT and POST bodies must be declared as JSON."""
    if request.method not in ("PUT", "POST"):
        return
    content_type = request.headers.get("content-type", "")
    if content_type.split(";")[0].strip().lower() != JSON_CONTENT_TYPE:
        raise RequestValidationError(f"Content-Type must be '{JSON_CONTENT_TYPE}'", status=415)
