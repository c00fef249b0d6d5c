"""API information and service health."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from deployment_handler.cloudify.client import CloudifyClient
from deployment_handler.context import RequestContext
from deployment_handler.dependencies import (
    get_app_settings,
    get_cloudify_client,
    get_inventory_client,
    get_request_context,
)
from deployment_handler.errors import DispatcherError
from deployment_handler.inventory.client import InventoryClient
from deployment_handler.logging import log_audit, log_warning
from deployment_handler.settings import Settings

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["info"])

API_LINKS = {
    "info": "/",
    "deployments": "/dcae-deployments",
    "policy": "/policy",
    "swagger-ui": "/docs",
}


@router.get("/")
async def api_info(
    ctx: RequestContext = Depends(get_request_context),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    log_audit(ctx, 200)
    return {
        "apiVersion": settings.api_version,
        "serverVersion": settings.app_version,
        "links": API_LINKS,
    }


@router.get("/servicehealth")
async def service_health(
    ctx: RequestContext = Depends(get_request_context),
    inventory: InventoryClient = Depends(get_inventory_client),
    cloudify: CloudifyClient = Depends(get_cloudify_client),
) -> JSONResponse:
    """OK only when the inventory and every Cloudify Manager service are up."""
    healthy = False
    try:
        if await inventory.is_service_healthy(ctx):
            manager = await cloudify.get_status(ctx)
            for service in manager.services:
                for instance in service.instances:
                    logger.info(
                        "health.cloudify.service",
                        display_name=service.display_name,
                        description=instance.description,
                        sub_state=instance.sub_state,
                        request_id=ctx.request_id,
                    )
            healthy = manager.is_healthy
    except DispatcherError as exc:
        log_warning(exc, ctx)

    status = 200 if healthy else 503
    log_audit(ctx, status)
    return JSONResponse(
        {"requestId": ctx.request_id, "status": "OK" if healthy else "NOT OK"},
        status_code=status,
    )
