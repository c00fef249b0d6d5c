"""
Cloudify Manager client.

Typed wrapper over the Cloudify REST API: blueprint upload, deployment
create/delete, workflow executions, outputs and paginated node-instance
listing. Every failure leaves this module as a ``DispatcherError``.
"""

import io
import zipfile
from collections.abc import Callable
from typing import Any

import structlog

from deployment_handler.cloudify.models import (
    DeploymentOutputDescriptions,
    DeploymentOutputs,
    Execution,
    ExecutionList,
    ExecutionStatus,
    ManagerStatus,
    NodeInstance,
    NodeInstancePage,
    OutputDescription,
    WorkflowKind,
)
from deployment_handler.context import TENANT_HEADER, RequestContext
from deployment_handler.downstream import DownstreamClient
from deployment_handler.errors import (
    TARGET_CLOUDIFY,
    DispatcherError,
    ErrorKind,
    LogCode,
    MaxRepetitionsError,
)
from deployment_handler.polling import repeat_until_done
from deployment_handler.settings import Settings

logger = structlog.get_logger(__name__)

EXISTING_RUNNING_EXECUTION = "existing_running_execution_error"
NOT_FOUND = "not_found_error"

NODE_INSTANCE_FIELDS = "id,deployment_id,runtime_properties"
EXECUTION_FIELDS = "id,status,workflow_id,deployment_id,error"


def is_running_execution_conflict(error: DispatcherError) -> bool:
    """The backend refused to start because another execution is running."""
    return error.backend_code == EXISTING_RUNNING_EXECUTION


def is_deployment_missing(error: DispatcherError) -> bool:
    """The backend no longer knows the target deployment."""
    return error.kind == ErrorKind.API and (
        error.status == 404 or error.backend_code == NOT_FOUND
    )


def package_blueprint(content: str) -> bytes:
    """Cloudify wants an archive of a directory, not the blueprint text."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("work/", b"")
        archive.writestr("work/blueprint.yaml", content.encode("utf-8"))
    return buffer.getvalue()


def build_execute_operation_parameters(
    operation: str,
    operation_kwargs: dict[str, Any],
    node_instance_ids: list[str],
) -> dict[str, Any]:
    """Parameters of the ``execute_operation`` workflow."""
    return {
        "operation": operation,
        "operation_kwargs": operation_kwargs,
        "allow_kwargs_override": True,
        "node_instance_ids": node_instance_ids,
    }


class CloudifyClient(DownstreamClient):
    """Cloudify Manager REST API client."""

    target = TARGET_CLOUDIFY
    system_log_code = LogCode.CLOUDIFY_COMMUNICATION
    api_log_code = LogCode.CLOUDIFY_API

    def __init__(
        self,
        base_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        tenant: str = "default_tenant",
        verify_ssl: bool = True,
        timeout: float = 30.0,
        page_size: int = 1000,
        creation_poll_interval: float = 30.0,
        creation_max_attempts: int = 10,
        workflow_poll_interval: float = 5.0,
        workflow_max_attempts: int = 720,
        transport: Any = None,
    ) -> None:
        super().__init__(
            base_url=base_url,
            username=username,
            password=password,
            verify_ssl=verify_ssl,
            timeout=timeout,
            transport=transport,
        )
        self.tenant = tenant
        self.page_size = page_size
        self.creation_poll_interval = creation_poll_interval
        self.creation_max_attempts = creation_max_attempts
        self.workflow_poll_interval = workflow_poll_interval
        self.workflow_max_attempts = workflow_max_attempts

    @classmethod
    def from_settings(
        cls, config: Settings.CloudifySettings, transport: Any = None
    ) -> "CloudifyClient":
        return cls(
            base_url=config.url,
            username=config.user,
            password=config.password,
            tenant=config.tenant,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            page_size=config.page_size,
            creation_poll_interval=config.creation_poll_interval,
            creation_max_attempts=config.creation_max_attempts,
            workflow_poll_interval=config.workflow_poll_interval,
            workflow_max_attempts=config.workflow_max_attempts,
            transport=transport,
        )

    def _request_headers(self, ctx: RequestContext | None) -> dict[str, str]:
        headers = super()._request_headers(ctx)
        headers[TENANT_HEADER] = (ctx.tenant if ctx and ctx.tenant else None) or self.tenant
        return headers

    # ------------------------------------------------------------------
    # Blueprints and deployments
    # ------------------------------------------------------------------

    async def upload_blueprint(self, ctx: RequestContext, blueprint_id: str, content: str) -> None:
        """Upload blueprint text as ``blueprint_id``, overwriting any previous upload."""
        await self._request(
            ctx,
            "PUT",
            f"/blueprints/{blueprint_id}",
            content=package_blueprint(content),
            headers={"Content-Type": "application/octet-stream"},
        )
        logger.debug("cloudify.blueprint.uploaded", blueprint_id=blueprint_id, request_id=ctx.request_id)

    async def create_deployment(
        self,
        ctx: RequestContext,
        deployment_id: str,
        blueprint_id: str,
        inputs: dict[str, Any] | None = None,
    ) -> None:
        """Create a deployment; the backend builds its environment asynchronously."""
        body: dict[str, Any] = {"blueprint_id": blueprint_id}
        if inputs:
            body["inputs"] = inputs
        await self._request(ctx, "PUT", f"/deployments/{deployment_id}", json=body)
        logger.debug("cloudify.deployment.created", deployment_id=deployment_id, request_id=ctx.request_id)

    async def wait_for_deployment_creation(self, ctx: RequestContext, deployment_id: str) -> Execution:
        """Wait for the deployment environment creation workflow to finish."""

        async def probe() -> ExecutionList:
            response = await self._request(
                ctx,
                "GET",
                "/executions",
                params={
                    "deployment_id": deployment_id,
                    "workflow_id": WorkflowKind.CREATE_DEPLOYMENT_ENVIRONMENT.value,
                    "_include": EXECUTION_FIELDS,
                },
            )
            return self._decode(ExecutionList, response, "deployment creation status")

        def still_pending(result: ExecutionList) -> bool:
            return not result.items or not result.items[0].is_terminal

        try:
            result = await repeat_until_done(
                probe, still_pending, self.creation_max_attempts, self.creation_poll_interval
            )
        except MaxRepetitionsError as exc:
            raise self._timed_out(f"creation of deployment {deployment_id}", exc) from exc

        execution = result.items[0]
        if execution.status != ExecutionStatus.TERMINATED.value:
            raise self._execution_failure(execution)
        return execution

    async def delete_deployment(self, ctx: RequestContext, deployment_id: str) -> None:
        await self._request(ctx, "DELETE", f"/deployments/{deployment_id}")

    async def delete_blueprint(self, ctx: RequestContext, blueprint_id: str) -> None:
        await self._request(ctx, "DELETE", f"/blueprints/{blueprint_id}")

    async def get_outputs(self, ctx: RequestContext, deployment_id: str) -> dict[str, Any]:
        """Raw output values of a deployment."""
        response = await self._request(ctx, "GET", f"/deployments/{deployment_id}/outputs")
        return self._decode(DeploymentOutputs, response, "deployment outputs").outputs

    async def get_output_descriptions(
        self, ctx: RequestContext, deployment_id: str
    ) -> dict[str, OutputDescription]:
        """Output declarations from the deployment's blueprint."""
        response = await self._request(
            ctx, "GET", f"/deployments/{deployment_id}", params={"_include": "outputs"}
        )
        return self._decode(DeploymentOutputDescriptions, response, "output descriptions").outputs

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def initiate_workflow_execution(
        self,
        ctx: RequestContext,
        deployment_id: str,
        workflow_id: str,
        parameters: dict[str, Any] | None = None,
    ) -> str:
        """
        Start a workflow and return the backend execution id.

        Uninstall runs with the caller's ``force`` flag and ignores per-node
        failures so one failing component does not block teardown.
        """
        body: dict[str, Any] = {"deployment_id": deployment_id, "workflow_id": workflow_id}
        params = dict(parameters or {})
        if workflow_id == WorkflowKind.UNINSTALL.value:
            body["force"] = ctx.force
            params["ignore_failure"] = True
        if params:
            body["parameters"] = params

        response = await self._request(
            ctx,
            "POST",
            "/executions",
            json=body,
            headers={"Content-Type": "application/json"},
        )
        execution = self._decode(Execution, response, "workflow start")
        logger.info(
            "cloudify.execution.started",
            deployment_id=deployment_id,
            workflow_id=workflow_id,
            execution_id=execution.id,
            request_id=ctx.request_id,
        )
        return execution.id

    async def get_execution_status(self, ctx: RequestContext, execution_id: str) -> Execution:
        response = await self._request(ctx, "GET", f"/executions/{execution_id}")
        return self._decode(Execution, response, "execution status")

    async def wait_for_workflow_execution(self, ctx: RequestContext, execution_id: str) -> Execution:
        """Poll an execution until it terminates; failure and cancellation raise."""
        logger.debug("cloudify.execution.waiting", execution_id=execution_id, request_id=ctx.request_id)

        try:
            execution = await repeat_until_done(
                lambda: self.get_execution_status(ctx, execution_id),
                lambda result: not result.is_terminal,
                self.workflow_max_attempts,
                self.workflow_poll_interval,
            )
        except MaxRepetitionsError as exc:
            raise self._timed_out(f"execution {execution_id}", exc) from exc

        if execution.status != ExecutionStatus.TERMINATED.value:
            raise self._execution_failure(execution)

        logger.info(
            "cloudify.execution.terminated",
            execution_id=execution_id,
            workflow_id=execution.workflow_id,
            deployment_id=execution.deployment_id,
            request_id=ctx.request_id,
        )
        return execution

    async def execute_workflow(
        self,
        ctx: RequestContext,
        deployment_id: str,
        workflow_id: str,
        parameters: dict[str, Any] | None = None,
    ) -> Execution:
        """Start a workflow and wait for it."""
        execution_id = await self.initiate_workflow_execution(ctx, deployment_id, workflow_id, parameters)
        return await self.wait_for_workflow_execution(ctx, execution_id)

    # ------------------------------------------------------------------
    # Node instances and manager status
    # ------------------------------------------------------------------

    async def list_node_instances(
        self,
        ctx: RequestContext,
        on_batch: Callable[[list[NodeInstance]], None],
        start_offset: int = 0,
    ) -> int:
        """
        Page through every node instance, handing each page to ``on_batch``.

        Returns:
            The offset reached, i.e. the total number of instances seen
        """
        offset = start_offset
        while True:
            response = await self._request(
                ctx,
                "GET",
                "/node-instances",
                params={"_include": NODE_INSTANCE_FIELDS, "_offset": offset, "_size": self.page_size},
            )
            page = self._decode(NodeInstancePage, response, "node instances")
            total = page.metadata.pagination.total

            if not page.items and offset < total:
                raise self._invalid_response(
                    "node instances", f"empty page at offset {offset} of {total}"
                )

            on_batch(page.items)
            offset += len(page.items)
            logger.debug(
                "cloudify.node_instances.page",
                offset=offset,
                total=total,
                request_id=ctx.request_id,
            )
            if offset >= total:
                return offset

    async def get_status(self, ctx: RequestContext) -> ManagerStatus:
        response = await self._request(ctx, "GET", "/status")
        return self._decode(ManagerStatus, response, "manager status")

    # ------------------------------------------------------------------

    def _timed_out(self, what: str, exc: MaxRepetitionsError) -> DispatcherError:
        return DispatcherError(
            f"Timed out waiting for {what}: {exc.message}",
            status=504,
            kind=ErrorKind.SYSTEM,
            log_code=LogCode.CLOUDIFY_COMMUNICATION,
            target=self.target,
        )

    def _execution_failure(self, execution: Execution) -> DispatcherError:
        if execution.status == ExecutionStatus.FAILED.value:
            message = f"workflow failed: {execution.id} -- {execution.error or 'no error information'}"
        elif execution.status == ExecutionStatus.CANCELLED.value:
            message = f"workflow canceled: {execution.id}"
        else:
            message = f"workflow--unexpected status {execution.status} for {execution.id}"
        return DispatcherError(
            message,
            status=502,
            kind=ErrorKind.API,
            log_code=LogCode.CLOUDIFY_API,
            target=self.target,
        )
