"""Request and response bodies of the deployments API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DeploymentRequest(BaseModel):
    """Body of ``PUT /dcae-deployments/{deploymentId}``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    service_type_id: str | None = Field(None, alias="serviceTypeId")
    inputs: dict[str, Any] | None = None


class Links(BaseModel):
    self: str
    status: str | None = None


class DeploymentAccepted(BaseModel):
    """Answer to a deploy or undeploy request once the workflow has started."""

    requestId: str
    links: Links


class DeploymentRef(BaseModel):
    href: str


class DeploymentList(BaseModel):
    requestId: str
    deployments: list[DeploymentRef]


class OperationStatus(BaseModel):
    requestId: str
    links: Links
    operationType: str | None = None
    status: str
    error: str | None = None
