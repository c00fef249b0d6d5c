"""
Policy reconciliation.

A policy update message is folded against every node instance Cloudify
knows about, page by page, into one :class:`ReconciliationPlan` per
deployment. Once the listing is complete each deployment with changes gets
a single ``policy_update`` operation through the execution queue.
"""

import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from deployment_handler.cloudify.client import CloudifyClient
from deployment_handler.cloudify.execution_queue import ExecutionQueue
from deployment_handler.cloudify.models import NodeInstance
from deployment_handler.context import RequestContext
from deployment_handler.errors import TARGET_CLOUDIFY, TARGET_SELF, DispatcherError, ErrorKind, LogCode
from deployment_handler.logging import log_audit, log_error
from deployment_handler.policy.models import (
    POLICY_UPDATE_OPERATION,
    PolicyUpdateMessage,
    ReconciliationPlan,
    policy_version,
)
from deployment_handler.tasks import BackgroundWork

logger = structlog.get_logger(__name__)


def _name_matches(pattern: str, policy_id: str, policy_name: str) -> bool:
    if pattern in (policy_id, policy_name):
        return True
    return re.search(pattern, policy_name) is not None


def filter_matches(
    policy_filter: dict[str, Any],
    policy_id: str,
    policy_name: str,
    matching_conditions: dict[str, Any],
) -> bool:
    """
    Check a latest policy against one component policy filter.

    Raises:
        re.error: the filter's policyName is not a valid regular expression
    """
    onap_name = policy_filter.get("onapName")
    if onap_name and onap_name != matching_conditions.get("ONAPName"):
        return False

    config_name = policy_filter.get("configName")
    if config_name and config_name != matching_conditions.get("ConfigName"):
        return False

    config_attributes = policy_filter.get("configAttributes") or {}
    for key, expected in config_attributes.items():
        if key not in matching_conditions or matching_conditions[key] != expected:
            return False

    return _name_matches(policy_filter["policyName"], policy_id, policy_name)


class PolicyCollector:
    """Accumulates reconciliation plans from pages of node instances."""

    def __init__(
        self,
        message: PolicyUpdateMessage,
        is_deployment_busy: Callable[[str], bool],
        ctx: RequestContext | None = None,
    ) -> None:
        self.message = message
        self.is_deployment_busy = is_deployment_busy
        self.ctx = ctx
        self.plans: dict[str, ReconciliationPlan] = {}
        self._seen: dict[str, ReconciliationPlan] = {}

    def collect(self, node_instances: list[NodeInstance]) -> None:
        for node_instance in node_instances:
            for problem in node_instance.policy_state.errors:
                log_error(
                    DispatcherError(
                        f"skipping malformed {problem} on node instance {node_instance.id} "
                        f"of deployment {node_instance.deployment_id}",
                        status=502,
                        kind=ErrorKind.API,
                        log_code=LogCode.CLOUDIFY_API,
                        target=TARGET_CLOUDIFY,
                    ),
                    self.ctx,
                )
            if node_instance.has_policy_state:
                self._collect_instance(node_instance)

    def _plan_for(self, deployment_id: str) -> ReconciliationPlan:
        plan = self._seen.get(deployment_id)
        if plan is None:
            plan = ReconciliationPlan(deployment_id, self.is_deployment_busy(deployment_id))
            self._seen[deployment_id] = plan
        return plan

    def _collect_instance(self, node_instance: NodeInstance) -> None:
        plan = self._plan_for(node_instance.deployment_id)
        deployed = node_instance.policies
        filters = node_instance.policy_filters

        removed = self._removals(plan, deployed, set(filters))
        changed = bool(removed)
        for policy_id in removed:
            plan.remove(policy_id)
            logger.info(
                "policy.remove",
                policy_id=policy_id,
                node_instance_id=node_instance.id,
                deployment_id=node_instance.deployment_id,
            )

        for policy_id, deployed_policy in deployed.items():
            if policy_id in removed:
                continue
            latest = self.message.latest_policies.get(policy_id)
            latest_version = policy_version(latest)
            deployed_version = policy_version(deployed_policy)
            if latest_version is None or deployed_version is None:
                continue
            if not plan.is_deployment_busy and latest_version == deployed_version:
                continue
            plan.update(policy_id, latest)
            changed = True
            logger.info(
                "policy.update",
                policy_id=policy_id,
                node_instance_id=node_instance.id,
                deployment_id=node_instance.deployment_id,
            )

        if filters:
            changed = self._match_filters(plan, node_instance, deployed, filters, removed) or changed

        if changed:
            plan.node_instance_ids.append(node_instance.id)
            self.plans[plan.deployment_id] = plan

    def _removals(
        self, plan: ReconciliationPlan, deployed: dict[str, Any], instance_filter_ids: set[str]
    ) -> set[str]:
        message = self.message
        removed = set()
        for policy_id, deployed_policy in deployed.items():
            if policy_id in message.removed_policies:
                removed.add(policy_id)
            elif (
                message.policy_filter_matches is not None
                and not deployed_policy.get("policy_persistent")
                and not message.policy_filter_matches.get(policy_id, set()) & instance_filter_ids
            ):
                removed.add(policy_id)
            elif (
                message.catch_up
                and (deployed_policy.get("policy_body") or plan.is_deployment_busy)
                and policy_id not in message.latest_policies
                and policy_id not in message.errored_policies
                and not message.in_errored_scope(policy_id)
                and message.in_scope(policy_id)
            ):
                removed.add(policy_id)
        return removed

    def _match_filters(
        self,
        plan: ReconciliationPlan,
        node_instance: NodeInstance,
        deployed: dict[str, Any],
        filters: dict[str, Any],
        removed: set[str],
    ) -> bool:
        changed = False
        for policy_id, latest in self.message.latest_policies.items():
            if policy_id in self.message.removed_policies or policy_id in removed:
                continue
            if not plan.is_deployment_busy and policy_id in deployed:
                continue
            if policy_version(latest) is None:
                continue
            body = latest["policy_body"]
            policy_name = body.get("policyName")
            if not policy_name or not isinstance(policy_name, str):
                continue
            matching_conditions = body.get("matchingConditions") or {}
            if not isinstance(matching_conditions, dict):
                continue

            for policy_filter_id, entry in filters.items():
                policy_filter = entry["policy_filter"]
                if not policy_filter["policyName"]:
                    continue
                try:
                    matched = filter_matches(policy_filter, policy_id, policy_name, matching_conditions)
                except re.error as exc:
                    log_error(
                        DispatcherError(
                            f"error on matching policy {policy_id} to filter {policy_filter_id}: {exc}",
                            status=500,
                            kind=ErrorKind.API,
                            log_code=LogCode.EXECUTE_WORKFLOW,
                            target=TARGET_SELF,
                        ),
                        self.ctx,
                    )
                    continue
                if matched:
                    plan.add(policy_filter_id, policy_id, latest)
                    changed = True
                    logger.info(
                        "policy.add",
                        policy_id=policy_id,
                        policy_filter_id=policy_filter_id,
                        node_instance_id=node_instance.id,
                        deployment_id=node_instance.deployment_id,
                    )
                    break
        return changed


class PolicyReconciler:
    """Applies policy update messages to running deployments."""

    def __init__(
        self,
        client: CloudifyClient,
        queue: ExecutionQueue,
        background: BackgroundWork | None = None,
    ) -> None:
        self.client = client
        self.queue = queue
        self.background = background or BackgroundWork()

    def start_update(self, ctx: RequestContext, message: PolicyUpdateMessage) -> None:
        """Reconcile in the background; the caller is answered right away."""
        self.background.spawn(self.reconcile(ctx, message), name=f"policy-update:{ctx.request_id}")

    async def reconcile(self, ctx: RequestContext, message: PolicyUpdateMessage) -> dict[str, ReconciliationPlan]:
        """
        Compute and dispatch policy changes for every deployment.

        Returns:
            The plans that were dispatched, keyed by deployment id
        """
        logger.info(
            "policy.update.received",
            catch_up=message.catch_up,
            latest_policies=len(message.latest_policies),
            removed_policies=len(message.removed_policies),
            request_id=ctx.request_id,
        )
        collector = PolicyCollector(message, self.queue.is_deployment_busy, ctx)
        try:
            await self.client.list_node_instances(ctx, collector.collect)
        except DispatcherError as exc:
            exc.message = f"failed to retrieve component policies from cloudify: {exc.message}"
            log_error(exc, ctx)
            log_audit(ctx, exc.status, exc.message)
            return {}

        plans = collector.plans
        if not plans:
            log_audit(ctx, 200, "no updated policies to apply to deployments")
            return {}

        updated = {pid for plan in plans.values() for pid in plan.updated_policies}
        added = {
            pid for plan in plans.values() for entry in plan.added_policies.values() for pid in entry["policies"]
        }
        removed = {pid for plan in plans.values() for pid in plan.removed_policy_ids}
        log_audit(
            ctx,
            200,
            f"going to apply updated policies[{len(updated)}] and added policies[{len(added)}] "
            f"and removed policies[{len(removed)}] to deployments[{len(plans)}]",
        )

        for plan in plans.values():
            logger.info(
                "policy.update.dispatch",
                deployment_id=plan.deployment_id,
                node_instance_ids=plan.node_instance_ids,
                request_id=ctx.request_id,
            )
            self.queue.execute_operation(
                ctx,
                plan.deployment_id,
                POLICY_UPDATE_OPERATION,
                plan.operation_kwargs(),
                plan.node_instance_ids,
            )
        return plans

    async def get_component_policies(self, ctx: RequestContext) -> tuple[int, dict[str, Any]]:
        """
        Collect every policy and policy filter deployed on node instances.

        Returns:
            HTTP status and response body
        """
        result: dict[str, Any] = {
            "requestID": ctx.request_id,
            "started": datetime.now(UTC).isoformat(),
            "node_instance_ids": [],
            "component_policies": [],
            "component_policy_filters": [],
        }

        def collect(node_instances: list[NodeInstance]) -> None:
            for node_instance in node_instances:
                owner = {"component_id": node_instance.id, "deployment_id": node_instance.deployment_id}
                policies = [{**policy, **owner} for policy in node_instance.policies.values()]
                policy_filters = [
                    {**policy_filter, **owner} for policy_filter in node_instance.policy_filters.values()
                ]
                if not policies and not policy_filters:
                    continue
                result["component_policies"].extend(policies)
                result["component_policy_filters"].extend(policy_filters)
                result["node_instance_ids"].append(
                    {
                        "node_instance_id": node_instance.id,
                        "deployment_id": node_instance.deployment_id,
                        "policies_count": len(policies),
                        "policy_filters_count": len(policy_filters),
                    }
                )

        try:
            total = await self.client.list_node_instances(ctx, collect)
        except DispatcherError as exc:
            log_error(exc, ctx)
            status, message = exc.status, exc.message
        else:
            status, message = 200, f"got {total} node_instances"

        result["ended"] = datetime.now(UTC).isoformat()
        result["status"] = status
        result["message"] = message
        log_audit(ctx, status, message)
        return status, result
