"""Policy update message and per-deployment reconciliation plans."""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

POLICY_UPDATE_OPERATION = "dcae.interfaces.policy.policy_update"


def _id_set(value: Any) -> Any:
    """Accept ``{id: true}`` maps as well as lists of ids."""
    if value is None:
        return set()
    if isinstance(value, dict):
        return {key for key, flag in value.items() if flag}
    return value


def policy_version(policy: dict[str, Any] | None) -> float | None:
    """Numeric ``policy_body.policyVersion``, or None if missing or not a number."""
    if not isinstance(policy, dict):
        return None
    body = policy.get("policy_body")
    if not isinstance(body, dict):
        return None
    version = body.get("policyVersion")
    if version is None or isinstance(version, bool):
        return None
    try:
        return float(version)
    except (TypeError, ValueError):
        return None


class PolicyUpdateMessage(BaseModel):
    """
    Body of ``POST /policy``.

    ``latest_policies`` maps policy id to ``{policy_id, policy_body}``.
    ``policy_filter_matches`` maps policy id to the filter ids the policy
    satisfies; when present, deployed policies that lost every match are
    removed. The catch-up fields drive removal of policies that have
    disappeared from the policy engine altogether.
    """

    model_config = ConfigDict(extra="ignore")

    latest_policies: dict[str, dict[str, Any]] = Field(default_factory=dict)
    removed_policies: set[str] = Field(default_factory=set)
    policy_filter_matches: dict[str, set[str]] | None = None

    catch_up: bool = False
    errored_policies: set[str] = Field(default_factory=set)
    errored_scopes: list[str] = Field(default_factory=list)
    scope_prefixes: list[str] = Field(default_factory=list)

    @field_validator("latest_policies", mode="before")
    @classmethod
    def drop_empty_policies(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {key: policy for key, policy in value.items() if isinstance(policy, dict)}
        return value

    @field_validator("removed_policies", "errored_policies", mode="before")
    @classmethod
    def to_id_set(cls, value: Any) -> Any:
        return _id_set(value)

    @field_validator("policy_filter_matches", mode="before")
    @classmethod
    def to_match_sets(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _id_set(filters) for key, filters in value.items()}
        return value

    @field_validator("errored_scopes", "scope_prefixes", mode="before")
    @classmethod
    def none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    def in_scope(self, policy_id: str) -> bool:
        return any(policy_id.startswith(prefix) for prefix in self.scope_prefixes)

    def in_errored_scope(self, policy_id: str) -> bool:
        return any(policy_id.startswith(scope) for scope in self.errored_scopes)


@dataclass
class ReconciliationPlan:
    """Policy changes to apply to one deployment."""

    deployment_id: str
    is_deployment_busy: bool = False
    updated_policies: dict[str, dict[str, Any]] = field(default_factory=dict)
    # filter id -> {"policy_filter_id": ..., "policies": {policy id -> policy}}
    added_policies: dict[str, dict[str, Any]] = field(default_factory=dict)
    removed_policy_ids: list[str] = field(default_factory=list)
    node_instance_ids: list[str] = field(default_factory=list)

    def remove(self, policy_id: str) -> None:
        """Removal wins over any update or addition of the same policy."""
        if policy_id not in self.removed_policy_ids:
            self.removed_policy_ids.append(policy_id)
        self.updated_policies.pop(policy_id, None)
        for entry in self.added_policies.values():
            entry["policies"].pop(policy_id, None)
        self.added_policies = {
            filter_id: entry for filter_id, entry in self.added_policies.items() if entry["policies"]
        }

    def update(self, policy_id: str, policy: dict[str, Any]) -> None:
        if policy_id not in self.removed_policy_ids:
            self.updated_policies[policy_id] = policy

    def add(self, policy_filter_id: str, policy_id: str, policy: dict[str, Any]) -> None:
        if policy_id in self.removed_policy_ids:
            return
        entry = self.added_policies.setdefault(
            policy_filter_id, {"policy_filter_id": policy_filter_id, "policies": {}}
        )
        entry["policies"][policy_id] = policy

    def operation_kwargs(self) -> dict[str, Any]:
        """Keyword arguments of the policy update operation."""
        return {
            "updated_policies": list(self.updated_policies.values()),
            "added_policies": self.added_policies,
            "removed_policies": list(self.removed_policy_ids),
        }
