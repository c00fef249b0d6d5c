"""Deployment lifecycle: install and uninstall pipelines and their API."""

from deployment_handler.deployments.pipeline import DeploymentPipeline, ExecutionReport, LaunchedWorkflow
from deployment_handler.deployments.service import DeploymentService

__all__ = ["DeploymentPipeline", "DeploymentService", "ExecutionReport", "LaunchedWorkflow"]
