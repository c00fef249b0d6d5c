"""
FastAPI application entry point for the deployment handler.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError as BodyValidationError
from fastapi.responses import JSONResponse

from deployment_handler import health
from deployment_handler.cloudify.client import CloudifyClient
from deployment_handler.cloudify.execution_queue import ExecutionQueue
from deployment_handler.config import load_settings
from deployment_handler.context import background_context
from deployment_handler.dependencies import check_authorization, get_request_context
from deployment_handler.deployments import router as deployments_router
from deployment_handler.deployments.pipeline import DeploymentPipeline
from deployment_handler.deployments.service import DeploymentService
from deployment_handler.errors import TARGET_SELF, DispatcherError, ErrorKind, LogCode
from deployment_handler.inventory.client import InventoryClient
from deployment_handler.logging import log_audit, log_error, log_metrics, setup_logging
from deployment_handler.middleware import RequestContextMiddleware
from deployment_handler.policy import router as policy_router
from deployment_handler.policy.reconciler import PolicyReconciler
from deployment_handler.settings import Settings, get_settings
from deployment_handler.tasks import BackgroundWork

logger = structlog.get_logger(__name__)


@dataclass
class Components:
    """Long-lived collaborators shared by all requests."""

    cloudify: CloudifyClient
    inventory: InventoryClient
    queue: ExecutionQueue
    background: BackgroundWork
    deployments: DeploymentService
    policy: PolicyReconciler

    async def close(self) -> None:
        await self.background.stop()
        await self.queue.shutdown()
        await self.cloudify.close()
        await self.inventory.close()


def build_components(
    settings: Settings,
    cloudify_transport: Any = None,
    inventory_transport: Any = None,
) -> Components:
    """Wire clients, the execution queue and the services on top of them."""
    cloudify = CloudifyClient.from_settings(settings.cloudify, transport=cloudify_transport)
    inventory = InventoryClient.from_settings(settings.inventory, transport=inventory_transport)
    queue = ExecutionQueue.from_settings(cloudify, settings.cloudify)
    background = BackgroundWork()
    return Components(
        cloudify=cloudify,
        inventory=inventory,
        queue=queue,
        background=background,
        deployments=DeploymentService(DeploymentPipeline(cloudify, queue), inventory, background),
        policy=PolicyReconciler(cloudify, queue, background),
    )


def attach_components(app: FastAPI, components: Components) -> None:
    app.state.components = components
    app.state.cloudify_client = components.cloudify
    app.state.inventory_client = components.inventory
    app.state.deployment_service = components.deployments
    app.state.policy_reconciler = components.policy


def _startup_error(message: str) -> DispatcherError:
    return DispatcherError(message, status=500, log_code=LogCode.STARTUP, target=TARGET_SELF)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Resolve configuration, build the components and release them on shutdown."""
    try:
        settings = await load_settings(app.state.settings)
    except DispatcherError as exc:
        exc.log_code = LogCode.STARTUP
        log_error(exc)
        raise

    missing = settings.missing_required()
    if missing:
        error = _startup_error(f"Required configuration elements missing: {','.join(missing)}")
        log_error(error)
        raise error

    setup_logging(settings.observability.log_level.value, settings.observability.log_format)
    app.state.settings = settings

    components = getattr(app.state, "components", None)
    if components is None:
        components = build_components(settings)
        attach_components(app, components)

    ctx = background_context()
    log_metrics(
        ctx,
        target_entity=TARGET_SELF,
        target_service="start",
        response_code=200,
        complete=True,
        elapsed_ms=0,
        detail=f"{settings.app_name} {settings.app_version} instance {settings.server_instance_uuid}",
    )
    logger.info(
        "service.startup.complete",
        version=settings.app_version,
        cloudify_url=settings.cloudify.url,
        inventory_url=settings.inventory.url,
    )

    yield

    await components.close()
    log_metrics(
        ctx,
        target_entity=TARGET_SELF,
        target_service="stop",
        response_code=200,
        complete=True,
        elapsed_ms=0,
        detail=f"{settings.app_name} shut down",
    )
    logger.info("service.shutdown.complete")


# ============================================================
# Exception handlers
# ============================================================


async def dispatcher_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Answer with ``{status, message}`` and record the failure."""
    if not isinstance(exc, DispatcherError):
        raise exc
    ctx = get_request_context(request)
    log_audit(ctx, exc.status, exc.message)
    if exc.status >= 500:
        log_error(exc, ctx)
    return JSONResponse(exc.to_dict(), status_code=exc.status)


async def body_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    errors = exc.errors() if isinstance(exc, BodyValidationError) else []
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in errors
    )
    error = DispatcherError(
        f"Invalid request: {detail or exc}", status=400, kind=ErrorKind.VALIDATION, target=TARGET_SELF
    )
    return await dispatcher_error_handler(request, error)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = DispatcherError(str(exc) or type(exc).__name__, status=500, target=TARGET_SELF)
    logger.exception("request.unexpected_error", error=str(exc))
    return await dispatcher_error_handler(request, error)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DispatcherError, dispatcher_error_handler)
    app.add_exception_handler(BodyValidationError, body_validation_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)


def create_application(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Deployment Handler",
        description="Deploys blueprints to Cloudify Manager and propagates policy updates",
        version=settings.api_version,
        lifespan=lifespan,
        dependencies=[Depends(check_authorization)],
    )
    app.state.settings = settings

    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(deployments_router.router)
    app.include_router(policy_router.router)

    return app


# Create application instance
app = create_application()
