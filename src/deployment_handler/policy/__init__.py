"""Policy update propagation into running deployments."""

from deployment_handler.policy.models import PolicyUpdateMessage, ReconciliationPlan
from deployment_handler.policy.reconciler import PolicyCollector, PolicyReconciler

__all__ = ["PolicyCollector", "PolicyReconciler", "PolicyUpdateMessage", "ReconciliationPlan"]
