"""
Deployments API.

PUT and DELETE answer 202 once Cloudify has accepted the install or
uninstall workflow; the ``status`` link reports on that execution.
"""

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from deployment_handler.context import RequestContext
from deployment_handler.dependencies import get_deployment_service, get_request_context, require_json
from deployment_handler.deployments.schemas import (
    DeploymentAccepted,
    DeploymentList,
    DeploymentRef,
    DeploymentRequest,
    Links,
    OperationStatus,
)
from deployment_handler.deployments.service import DeploymentService
from deployment_handler.errors import RequestValidationError
from deployment_handler.logging import log_audit

DEPLOYMENTS_PATH = "/dcae-deployments"

router = APIRouter(prefix=DEPLOYMENTS_PATH, tags=["deployments"], dependencies=[Depends(require_json)])


def _links(request: Request, deployment_id: str, execution_id: str | None = None) -> Links:
    base = f"{str(request.base_url).rstrip('/')}{DEPLOYMENTS_PATH}/{deployment_id}"
    return Links(self=base, status=f"{base}/operation/{execution_id}" if execution_id else None)


@router.get("", response_model=DeploymentList)
async def list_deployments(
    request: Request,
    service_type_id: str | None = Query(None, alias="serviceTypeId"),
    ctx: RequestContext = Depends(get_request_context),
    service: DeploymentService = Depends(get_deployment_service),
) -> DeploymentList:
    """List deployments known to the inventory, optionally of one service type."""
    services = await service.list_deployments(ctx, service_type_id)
    log_audit(ctx, 200)
    return DeploymentList(
        requestId=ctx.request_id,
        deployments=[
            DeploymentRef(href=_links(request, ref.deployment_id).self) for ref in services
        ],
    )


@router.put("/{deployment_id}", status_code=status.HTTP_202_ACCEPTED, response_model=DeploymentAccepted)
async def create_deployment(
    deployment_id: str,
    body: DeploymentRequest,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: DeploymentService = Depends(get_deployment_service),
) -> DeploymentAccepted:
    """Deploy the blueprint of ``serviceTypeId`` as ``deployment_id``."""
    if not body.service_type_id:
        raise RequestValidationError("Missing required parameter serviceTypeId")

    launched = await service.start_deployment(ctx, deployment_id, body.service_type_id, body.inputs)
    log_audit(ctx, 202, f"Execution ID: {launched.execution_id}")
    return DeploymentAccepted(
        requestId=ctx.request_id, links=_links(request, deployment_id, launched.execution_id)
    )


@router.delete("/{deployment_id}", status_code=status.HTTP_202_ACCEPTED, response_model=DeploymentAccepted)
async def delete_deployment(
    deployment_id: str,
    request: Request,
    force: bool = Query(False),
    ctx: RequestContext = Depends(get_request_context),
    service: DeploymentService = Depends(get_deployment_service),
) -> DeploymentAccepted:
    """Uninstall a deployment and remove it from the inventory."""
    ctx = ctx.with_force(force)
    launched = await service.start_undeployment(ctx, deployment_id)
    log_audit(ctx, 202, f"ExecutionId: {launched.execution_id}")
    return DeploymentAccepted(
        requestId=ctx.request_id, links=_links(request, deployment_id, launched.execution_id)
    )


@router.get("/{deployment_id}/operation/{execution_id}", response_model=OperationStatus)
async def get_operation_status(
    deployment_id: str,
    execution_id: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: DeploymentService = Depends(get_deployment_service),
) -> JSONResponse:
    report = await service.get_execution_status(ctx, execution_id)
    log_audit(ctx, 200, f"Workflow type: {report.operation_type} -- execution status: {report.status}")
    result = OperationStatus(
        requestId=ctx.request_id,
        links=_links(request, deployment_id, execution_id),
        operationType=report.operation_type,
        status=report.status,
        error=report.error,
    )
    return JSONResponse(result.model_dump(exclude_none=True))
