"""
Install and uninstall state machines.

Each lifecycle is split at the point where the backend has accepted the
workflow: ``launch_*`` returns as soon as the execution id is known, and
``finish_*`` waits for the workflow and performs the remaining steps.
A failure at any step aborts the rest; nothing is rolled back here.

Install and uninstall are started directly rather than through the
execution queue, so they never wait behind queued policy updates. The
deployment is held busy on the queue until the workflow terminates.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from deployment_handler.cloudify.client import CloudifyClient
from deployment_handler.cloudify.execution_queue import ExecutionQueue
from deployment_handler.cloudify.models import ExecutionStatus, WorkflowKind
from deployment_handler.context import RequestContext

logger = structlog.get_logger(__name__)


@dataclass
class LaunchedWorkflow:
    """A workflow the backend has accepted but not necessarily finished."""

    deployment_id: str
    execution_id: str


@dataclass
class ExecutionReport:
    """Caller-facing view of one execution."""

    operation_type: str | None
    status: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"operationType": self.operation_type, "status": self.status}
        if self.error:
            result["error"] = self.error
        return result


_REPORTED_STATUS = {
    ExecutionStatus.TERMINATED.value: "succeeded",
    ExecutionStatus.FAILED.value: "failed",
    ExecutionStatus.CANCELLED.value: "canceled",
}


class DeploymentPipeline:
    """Drives a deployment through install or uninstall on Cloudify."""

    def __init__(self, client: CloudifyClient, queue: ExecutionQueue) -> None:
        self.client = client
        self.queue = queue

    async def _start(self, ctx: RequestContext, deployment_id: str, workflow: WorkflowKind) -> LaunchedWorkflow:
        self.queue.hold(deployment_id)
        try:
            execution_id = await self.client.initiate_workflow_execution(ctx, deployment_id, workflow.value)
        except BaseException:
            self.queue.release(deployment_id)
            raise
        return LaunchedWorkflow(deployment_id, execution_id)

    async def _wait(self, ctx: RequestContext, launched: LaunchedWorkflow) -> None:
        try:
            await self.client.wait_for_workflow_execution(ctx, launched.execution_id)
        finally:
            self.queue.release(launched.deployment_id)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def launch_blueprint(
        self,
        ctx: RequestContext,
        deployment_id: str,
        blueprint: str,
        inputs: dict[str, Any] | None = None,
    ) -> LaunchedWorkflow:
        """
        Upload the blueprint, create the deployment and start ``install``.

        The blueprint is stored under the deployment id.
        """
        logger.debug("pipeline.install.upload", deployment_id=deployment_id, request_id=ctx.request_id)
        await self.client.upload_blueprint(ctx, deployment_id, blueprint)

        await self.client.create_deployment(ctx, deployment_id, deployment_id, inputs)
        await self.client.wait_for_deployment_creation(ctx, deployment_id)
        logger.debug("pipeline.install.created", deployment_id=deployment_id, request_id=ctx.request_id)

        return await self._start(ctx, deployment_id, WorkflowKind.INSTALL)

    async def finish_installation(self, ctx: RequestContext, launched: LaunchedWorkflow) -> dict[str, Any]:
        """Wait for ``install`` and collect the annotated outputs."""
        await self._wait(ctx, launched)
        logger.debug(
            "pipeline.install.completed",
            deployment_id=launched.deployment_id,
            execution_id=launched.execution_id,
            request_id=ctx.request_id,
        )
        raw_outputs = await self.client.get_outputs(ctx, launched.deployment_id)
        return await self.annotate_outputs(ctx, launched.deployment_id, raw_outputs)

    async def deploy_blueprint(
        self,
        ctx: RequestContext,
        deployment_id: str,
        blueprint: str,
        inputs: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        launched = await self.launch_blueprint(ctx, deployment_id, blueprint, inputs)
        return await self.finish_installation(ctx, launched)

    async def annotate_outputs(
        self, ctx: RequestContext, deployment_id: str, raw_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge output values with the descriptions declared in the blueprint."""
        if not raw_outputs:
            return {}

        descriptions = await self.client.get_output_descriptions(ctx, deployment_id)
        outputs: dict[str, Any] = {}
        for name, value in raw_outputs.items():
            outputs[name] = {"value": value}
            declared = descriptions.get(name)
            if declared and declared.description:
                outputs[name]["description"] = declared.description
        return outputs

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------

    async def launch_uninstall(self, ctx: RequestContext, deployment_id: str) -> LaunchedWorkflow:
        """Start ``uninstall``; ``ctx.force`` is passed through to Cloudify."""
        logger.debug(
            "pipeline.uninstall.start", deployment_id=deployment_id, force=ctx.force, request_id=ctx.request_id
        )
        return await self._start(ctx, deployment_id, WorkflowKind.UNINSTALL)

    async def finish_uninstall(self, ctx: RequestContext, launched: LaunchedWorkflow) -> None:
        """Wait for ``uninstall``, then delete the deployment and its blueprint."""
        await self._wait(ctx, launched)
        await self.client.delete_deployment(ctx, launched.deployment_id)
        logger.debug("pipeline.uninstall.deleted", deployment_id=launched.deployment_id, request_id=ctx.request_id)
        await self.client.delete_blueprint(ctx, launched.deployment_id)

    async def undeploy_deployment(self, ctx: RequestContext, deployment_id: str) -> None:
        launched = await self.launch_uninstall(ctx, deployment_id)
        await self.finish_uninstall(ctx, launched)

    # ------------------------------------------------------------------

    async def get_execution_status(self, ctx: RequestContext, execution_id: str) -> ExecutionReport:
        execution = await self.client.get_execution_status(ctx, execution_id)
        return ExecutionReport(
            operation_type=execution.workflow_id,
            status=_REPORTED_STATUS.get(execution.status, "processing"),
            error=execution.error,
        )
