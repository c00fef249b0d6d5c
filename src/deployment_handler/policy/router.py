"""Policy API: policy update notifications and the component policy listing."""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from deployment_handler.context import RequestContext
from deployment_handler.dependencies import (
    get_app_settings,
    get_policy_reconciler,
    get_request_context,
    require_json,
)
from deployment_handler.policy.models import PolicyUpdateMessage
from deployment_handler.policy.reconciler import PolicyReconciler
from deployment_handler.settings import Settings

router = APIRouter(prefix="/policy", tags=["policy"], dependencies=[Depends(require_json)])


@router.post("")
async def policy_update(
    message: PolicyUpdateMessage,
    ctx: RequestContext = Depends(get_request_context),
    reconciler: PolicyReconciler = Depends(get_policy_reconciler),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """
    Accept a policy update.

    The policy handler is answered right away; the update is applied to
    the deployments in the background.
    """
    reconciler.start_update(ctx, message)
    return {
        "requestID": ctx.request_id,
        "started": datetime.now(UTC).isoformat(),
        "server_instance_uuid": settings.server_instance_uuid,
    }


@router.get("/components")
async def component_policies(
    ctx: RequestContext = Depends(get_request_context),
    reconciler: PolicyReconciler = Depends(get_policy_reconciler),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Every policy and policy filter currently deployed on a component."""
    status, result = await reconciler.get_component_policies(ctx)
    result["server_instance_uuid"] = settings.server_instance_uuid
    return JSONResponse(result, status_code=status)
