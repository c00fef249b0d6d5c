"""
Deployment request handling.

Ties the inventory bookkeeping to the pipeline: the HTTP caller gets an
answer once the backend has accepted the workflow, and the rest of the
lifecycle continues as background work that reports through the audit
and error logs.
"""

import structlog

from deployment_handler.context import RequestContext
from deployment_handler.deployments.pipeline import DeploymentPipeline, ExecutionReport, LaunchedWorkflow
from deployment_handler.errors import DispatcherError
from deployment_handler.inventory.client import InventoryClient, ServiceRef
from deployment_handler.logging import log_audit, log_error
from deployment_handler.tasks import BackgroundWork

logger = structlog.get_logger(__name__)


class DeploymentService:
    """Front door for deploy, undeploy and status requests."""

    def __init__(
        self,
        pipeline: DeploymentPipeline,
        inventory: InventoryClient,
        background: BackgroundWork | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.inventory = inventory
        self.background = background or BackgroundWork()

    async def list_deployments(self, ctx: RequestContext, service_type_id: str | None = None) -> list[ServiceRef]:
        return await self.inventory.get_services_by_type(ctx, service_type_id)

    async def start_deployment(
        self,
        ctx: RequestContext,
        deployment_id: str,
        service_type_id: str,
        inputs: dict | None = None,
    ) -> LaunchedWorkflow:
        """
        Validate, reserve the id in inventory and start ``install``.

        If anything fails before the install has started, the inventory entry
        is removed again and the error is raised to the caller.
        """
        await self.inventory.verify_unique_deployment_id(ctx, deployment_id)
        service_type = await self.inventory.get_blueprint_by_type(ctx, service_type_id)
        await self.inventory.add_service(ctx, deployment_id, service_type.type_id)

        try:
            launched = await self.pipeline.launch_blueprint(
                ctx, deployment_id, service_type.blueprint or "", inputs
            )
        except DispatcherError:
            await self._forget(ctx, deployment_id)
            raise

        self.background.spawn(self._complete_installation(ctx, launched), name=f"install:{deployment_id}")
        return launched

    async def start_undeployment(self, ctx: RequestContext, deployment_id: str) -> LaunchedWorkflow:
        """Start ``uninstall`` and drop the inventory entry."""
        launched = await self.pipeline.launch_uninstall(ctx, deployment_id)
        # Completion releases the busy hold and must run even if inventory fails
        self.background.spawn(self._complete_uninstall(ctx, launched), name=f"uninstall:{deployment_id}")

        await self.inventory.delete_service(ctx, deployment_id)
        return launched

    async def get_execution_status(self, ctx: RequestContext, execution_id: str) -> ExecutionReport:
        return await self.pipeline.get_execution_status(ctx, execution_id)

    async def shutdown(self) -> None:
        await self.background.stop()

    # ------------------------------------------------------------------

    async def _forget(self, ctx: RequestContext, deployment_id: str) -> None:
        try:
            await self.inventory.delete_service(ctx, deployment_id)
        except DispatcherError as exc:
            log_error(exc, ctx)

    async def _complete_installation(self, ctx: RequestContext, launched: LaunchedWorkflow) -> None:
        try:
            outputs = await self.pipeline.finish_installation(ctx, launched)
        except DispatcherError as exc:
            # The deployment may exist on Cloudify, so the inventory entry stays
            self._report_late_failure(ctx, exc, f"Error deploying deploymentId {launched.deployment_id}")
            return

        logger.info(
            "deployment.installed",
            deployment_id=launched.deployment_id,
            outputs=outputs,
            request_id=ctx.request_id,
        )
        log_audit(ctx, 200, f"Deployed id: {launched.deployment_id}")

    async def _complete_uninstall(self, ctx: RequestContext, launched: LaunchedWorkflow) -> None:
        try:
            await self.pipeline.finish_uninstall(ctx, launched)
        except DispatcherError as exc:
            self._report_late_failure(ctx, exc, f"Error undeploying deploymentId {launched.deployment_id}")
            return

        log_audit(ctx, 200, f"Undeployed id: {launched.deployment_id}")

    @staticmethod
    def _report_late_failure(ctx: RequestContext, exc: DispatcherError, prefix: str) -> None:
        exc.message = f"{prefix}: {exc.message}"
        log_error(exc, ctx)
        log_audit(ctx, 500, exc.message)
