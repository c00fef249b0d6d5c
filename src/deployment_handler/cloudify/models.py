"""Response schemas for the Cloudify Manager REST API."""

from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class ExecutionStatus(str, Enum):
    """Execution states reported by Cloudify."""

    PENDING = "pending"
    STARTED = "started"
    CANCELLING = "cancelling"
    FORCE_CANCELLING = "force_cancelling"
    TERMINATED = "terminated"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    ExecutionStatus.TERMINATED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
}


class WorkflowKind(str, Enum):
    """Workflows the dispatcher runs against a deployment."""

    CREATE_DEPLOYMENT_ENVIRONMENT = "create_deployment_environment"
    INSTALL = "install"
    UNINSTALL = "uninstall"
    EXECUTE_OPERATION = "execute_operation"


class _CloudifyModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Execution(_CloudifyModel):
    """One workflow execution."""

    id: str
    status: str
    workflow_id: str | None = None
    deployment_id: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Pagination(_CloudifyModel):
    total: int
    offset: int = 0
    size: int = 0


class ListMetadata(_CloudifyModel):
    pagination: Pagination


class ExecutionList(_CloudifyModel):
    items: list[Execution]
    metadata: ListMetadata | None = None


class DeployedPolicy(_CloudifyModel):
    """A policy as a component stores it in its runtime properties."""

    model_config = ConfigDict(extra="allow")

    policy_id: str | None = None
    policy_body: dict[str, Any] | None = None
    policy_persistent: bool | None = None


class PolicyFilterCriteria(_CloudifyModel):
    model_config = ConfigDict(extra="allow")

    policyName: str
    onapName: str | None = None
    configName: str | None = None
    configAttributes: dict[str, Any] | None = None


class PolicyFilterEntry(_CloudifyModel):
    model_config = ConfigDict(extra="allow")

    policy_filter_id: str | None = None
    policy_filter: PolicyFilterCriteria


@dataclass
class PolicyState:
    """
    Policies and policy filters a node instance carries.

    Entries are kept as stored; ``errors`` describes the ones that did not
    decode and were left out.
    """

    policies: dict[str, dict[str, Any]] = field(default_factory=dict)
    policy_filters: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


def _decode_entries(
    raw: Any, model: type[BaseModel], kind: str, errors: list[str]
) -> dict[str, dict[str, Any]]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        errors.append(f"{kind} map is {type(raw).__name__}, expected an object")
        return {}

    entries: dict[str, dict[str, Any]] = {}
    for entry_id, entry in raw.items():
        try:
            model.model_validate(entry)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'entry'}: {error['msg']}" for error in exc.errors()
            )
            errors.append(f"{kind} {entry_id}: {problems}")
            continue
        entries[entry_id] = entry
    return entries


class NodeInstance(_CloudifyModel):
    """A backend-reported unit of a deployment."""

    id: str
    deployment_id: str
    runtime_properties: dict[str, Any] = Field(default_factory=dict)

    @cached_property
    def policy_state(self) -> PolicyState:
        errors: list[str] = []
        policies = _decode_entries(self.runtime_properties.get("policies"), DeployedPolicy, "policy", errors)
        policy_filters = _decode_entries(
            self.runtime_properties.get("policy_filters"), PolicyFilterEntry, "policy_filter", errors
        )
        return PolicyState(policies, policy_filters, errors)

    @property
    def policies(self) -> dict[str, dict[str, Any]]:
        return self.policy_state.policies

    @property
    def policy_filters(self) -> dict[str, dict[str, Any]]:
        return self.policy_state.policy_filters

    @property
    def has_policy_state(self) -> bool:
        return bool(self.policies or self.policy_filters)


class NodeInstancePage(_CloudifyModel):
    items: list[NodeInstance]
    metadata: ListMetadata


class DeploymentOutputs(_CloudifyModel):
    deployment_id: str | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)


class OutputDescription(_CloudifyModel):
    description: str | None = None


class DeploymentOutputDescriptions(_CloudifyModel):
    """``GET /deployments/{id}?include=outputs``."""

    outputs: dict[str, OutputDescription]


class ManagerServiceInstance(_CloudifyModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    description: str | None = Field(None, alias="Description")
    sub_state: str | None = Field(None, alias="SubState")


class ManagerService(_CloudifyModel):
    display_name: str | None = None
    instances: list[ManagerServiceInstance] = Field(default_factory=list)

    @field_validator("instances", mode="before")
    @classmethod
    def instances_as_list(cls, value: Any) -> Any:
        return list(value.values()) if isinstance(value, dict) else value


class ManagerStatus(_CloudifyModel):
    """``GET /status``."""

    status: str
    services: list[ManagerService] = Field(default_factory=list)

    @field_validator("services", mode="before")
    @classmethod
    def services_as_list(cls, value: Any) -> Any:
        # Older managers key services by name
        return list(value.values()) if isinstance(value, dict) else value

    @property
    def is_healthy(self) -> bool:
        if self.status != "running":
            return False
        return all(
            instance.sub_state == "running"
            for service in self.services
            for instance in service.instances
        )
