"""
Per-deployment execution queue.

Cloudify refuses to start a workflow on a deployment that already has one
running. Policy update operations go through an :class:`ExecutionQueue`, which
keeps at most one of them in flight per deployment and starts them in
arrival order. Install and uninstall run outside the queue but hold the
deployment busy while they are in flight.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from deployment_handler.cloudify.client import (
    CloudifyClient,
    build_execute_operation_parameters,
    is_deployment_missing,
    is_running_execution_conflict,
)
from deployment_handler.cloudify.models import Execution, WorkflowKind
from deployment_handler.context import RequestContext
from deployment_handler.errors import TARGET_SELF, DispatcherError, ErrorKind, LogCode
from deployment_handler.logging import log_error
from deployment_handler.settings import Settings

logger = structlog.get_logger(__name__)


def _consume(future: asyncio.Future) -> None:
    # Nobody may be awaiting a fire-and-forget entry
    if not future.cancelled():
        future.exception()


@dataclass
class QueuedExecution:
    """
    One workflow waiting for (or holding) its deployment's execution slot.

    ``started`` resolves with the backend execution id once Cloudify accepts
    the start, ``done`` with the terminated execution. Both receive the
    error if the entry fails or is dropped.
    """

    ctx: RequestContext
    deployment_id: str
    workflow_id: str
    parameters: dict[str, Any] | None = None
    started: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    done: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    def __post_init__(self) -> None:
        self.started.add_done_callback(_consume)
        self.done.add_done_callback(_consume)

    def fail(self, error: BaseException) -> None:
        for future in (self.started, self.done):
            if not future.done():
                future.set_exception(error)

    def cancel(self) -> None:
        for future in (self.started, self.done):
            future.cancel()


class ExecutionQueue:
    """
    FIFO of workflow executions per deployment.

    A deployment with queued or in-flight work has a deque and one worker
    task draining it; an idle deployment has neither.
    """

    def __init__(
        self,
        client: CloudifyClient,
        conflict_retry_interval: float = 5.0,
        conflict_max_retries: int = 720,
    ) -> None:
        self._client = client
        self.conflict_retry_interval = conflict_retry_interval
        self.conflict_max_retries = conflict_max_retries
        self._queues: dict[str, deque[QueuedExecution]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        # deployment id -> number of install/uninstall workflows in flight
        self._held: dict[str, int] = {}

    @classmethod
    def from_settings(cls, client: CloudifyClient, config: Settings.CloudifySettings) -> "ExecutionQueue":
        return cls(
            client,
            conflict_retry_interval=config.conflict_retry_interval,
            conflict_max_retries=config.conflict_max_retries,
        )

    def is_deployment_busy(self, deployment_id: str) -> bool:
        """True while the deployment has an execution queued, held or in flight."""
        return deployment_id in self._queues or deployment_id in self._held

    def hold(self, deployment_id: str) -> None:
        """Mark a workflow started outside the queue as running on ``deployment_id``."""
        self._held[deployment_id] = self._held.get(deployment_id, 0) + 1

    def release(self, deployment_id: str) -> None:
        remaining = self._held.get(deployment_id, 0) - 1
        if remaining > 0:
            self._held[deployment_id] = remaining
        else:
            self._held.pop(deployment_id, None)

    def pending_count(self, deployment_id: str) -> int:
        queue = self._queues.get(deployment_id)
        return len(queue) if queue else 0

    @property
    def busy_deployments(self) -> list[str]:
        return list(dict.fromkeys([*self._queues, *self._held]))

    def enqueue(
        self,
        ctx: RequestContext,
        deployment_id: str,
        workflow_id: str,
        parameters: dict[str, Any] | None = None,
    ) -> QueuedExecution:
        """
        Queue a workflow on a deployment without waiting for it.

        Starts it right away when the deployment is idle. Callers that need
        the outcome await ``started`` or ``done`` on the returned entry.
        """
        entry = QueuedExecution(ctx, deployment_id, workflow_id, parameters)
        queue = self._queues.get(deployment_id)

        if queue is None:
            self._queues[deployment_id] = deque([entry])
            self._workers[deployment_id] = asyncio.create_task(
                self._drain(deployment_id), name=f"execution-queue:{deployment_id}"
            )
        else:
            queue.append(entry)

        logger.info(
            "execution_queue.enqueued",
            deployment_id=deployment_id,
            workflow_id=workflow_id,
            position=len(self._queues[deployment_id]),
            request_id=ctx.request_id,
        )
        return entry

    def execute_operation(
        self,
        ctx: RequestContext,
        deployment_id: str,
        operation: str,
        operation_kwargs: dict[str, Any],
        node_instance_ids: list[str],
    ) -> QueuedExecution:
        """Queue an ``execute_operation`` workflow against some node instances."""
        return self.enqueue(
            ctx,
            deployment_id,
            WorkflowKind.EXECUTE_OPERATION.value,
            build_execute_operation_parameters(operation, operation_kwargs, node_instance_ids),
        )

    async def join(self) -> None:
        """Wait until every deployment is idle."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every worker; queued entries are cancelled with them."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        # A worker cancelled before its first step never reaches its cleanup
        for queue in self._queues.values():
            for entry in queue:
                entry.cancel()
        self._queues.clear()
        self._workers.clear()

    # ------------------------------------------------------------------

    async def _drain(self, deployment_id: str) -> None:
        queue = self._queues[deployment_id]
        try:
            while queue:
                entry = queue[0]
                try:
                    execution = await self._run(entry)
                except DispatcherError as error:
                    self._drop(deployment_id, entry, error)
                    return
                except Exception as exc:
                    logger.exception(
                        "execution_queue.unexpected_error", deployment_id=deployment_id, workflow_id=entry.workflow_id
                    )
                    self._drop(
                        deployment_id,
                        entry,
                        DispatcherError(
                            f"{type(exc).__name__}: {exc}",
                            status=500,
                            kind=ErrorKind.SYSTEM,
                            log_code=LogCode.EXECUTE_WORKFLOW,
                            target=TARGET_SELF,
                        ),
                    )
                    return
                queue.popleft()
                if not entry.done.done():
                    entry.done.set_result(execution)
        finally:
            for entry in queue:
                entry.cancel()
            queue.clear()
            del self._queues[deployment_id]
            del self._workers[deployment_id]

    async def _run(self, entry: QueuedExecution) -> Execution:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.conflict_max_retries + 1),
            wait=wait_fixed(self.conflict_retry_interval),
            retry=retry_if_exception(
                lambda exc: isinstance(exc, DispatcherError) and is_running_execution_conflict(exc)
            ),
            before_sleep=lambda state: logger.info(
                "execution_queue.conflict",
                deployment_id=entry.deployment_id,
                workflow_id=entry.workflow_id,
                attempt=state.attempt_number,
                request_id=entry.ctx.request_id,
            ),
            reraise=True,
        )
        execution_id = await retrying(
            self._client.initiate_workflow_execution,
            entry.ctx,
            entry.deployment_id,
            entry.workflow_id,
            entry.parameters,
        )
        if not entry.started.done():
            entry.started.set_result(execution_id)

        return await self._client.wait_for_workflow_execution(entry.ctx, execution_id)

    def _drop(self, deployment_id: str, failed: QueuedExecution, error: DispatcherError) -> None:
        """Abandon everything queued for a deployment after a terminal failure."""
        queue = self._queues[deployment_id]
        dropped = list(queue)
        queue.clear()

        if is_running_execution_conflict(error):
            reason = f"still busy after {self.conflict_max_retries} retries"
        elif is_deployment_missing(error):
            reason = "deployment not found"
        else:
            reason = f"{failed.workflow_id} failed"

        log_error(
            DispatcherError(
                f"Execution queue of {deployment_id} dropped {len(dropped)} execution(s): "
                f"{reason}: {error.message}",
                status=error.status,
                kind=error.kind,
                log_code=LogCode.EXECUTE_WORKFLOW,
                target=error.target,
            ),
            failed.ctx,
        )
        for entry in dropped:
            entry.fail(error)
