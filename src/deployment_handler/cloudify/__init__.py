"""Cloudify Manager integration: REST client and execution queue."""

from deployment_handler.cloudify.client import CloudifyClient
from deployment_handler.cloudify.execution_queue import ExecutionQueue, QueuedExecution

__all__ = ["CloudifyClient", "ExecutionQueue", "QueuedExecution"]
