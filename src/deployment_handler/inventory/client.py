"""
Inventory client.

The inventory records which deployments exist and maps service types to
their blueprints. A deployment id is reserved in the inventory before the
install starts and released once the uninstall has been launched.
"""

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from deployment_handler.context import RequestContext
from deployment_handler.downstream import DownstreamClient
from deployment_handler.errors import (
    TARGET_INVENTORY,
    DispatcherError,
    ErrorKind,
    LogCode,
    RequestValidationError,
)
from deployment_handler.settings import Settings

logger = structlog.get_logger(__name__)

SERVICE_TYPES = "/dcae-service-types"
SERVICES = "/dcae-services"
SERVICE_HEALTH = "/servicehealth"

# Inventory requires a components list; nothing richer is known at install time
PLACEHOLDER_COMPONENTS = [
    {
        "componentType": "dummy_component",
        "componentId": "/components/dummy",
        "componentSource": "DCAEController",
        "shareable": 0,
    }
]


class ServiceType(BaseModel):
    """``GET /dcae-service-types/{typeId}``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type_id: str = Field(alias="typeId")
    blueprint: str | None = Field(None, alias="blueprintTemplate")


class ServiceRef(BaseModel):
    """A deployment as recorded in the inventory."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    deployment_id: str = Field(alias="deploymentRef")
    service_type_id: str | None = Field(None, alias="typeId")


class ServiceList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: list[ServiceRef] = Field(default_factory=list)


class InventoryClient(DownstreamClient):
    """Inventory REST API client."""

    target = TARGET_INVENTORY
    system_log_code = LogCode.INVENTORY_COMMUNICATION
    api_log_code = LogCode.INVENTORY_API
    pass_client_errors = False

    @classmethod
    def from_settings(cls, config: Settings.InventorySettings, transport: Any = None) -> "InventoryClient":
        return cls(
            base_url=config.url,
            username=config.user,
            password=config.password,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            transport=transport,
        )

    async def verify_unique_deployment_id(self, ctx: RequestContext, deployment_id: str) -> None:
        """
        Refuse a deployment id the inventory already knows.

        Raises:
            RequestValidationError: 409 if the id is taken
            DispatcherError: if the inventory cannot answer
        """
        response = await self._request(ctx, "GET", f"{SERVICES}/{deployment_id}", allow_statuses=(404,))
        if response.status_code != 404:
            raise RequestValidationError(
                f"Deployment {deployment_id} already exists",
                status=409,
                log_code=LogCode.INVENTORY_API,
            )

    async def get_blueprint_by_type(self, ctx: RequestContext, service_type_id: str) -> ServiceType:
        """
        Look up the blueprint of a service type.

        Raises:
            RequestValidationError: 404 if the type is unknown or has no blueprint
        """
        response = await self._request(
            ctx, "GET", f"{SERVICE_TYPES}/{service_type_id}", allow_statuses=(404,)
        )
        service_type = None
        if response.status_code != 404:
            service_type = self._decode(ServiceType, response, "service type")

        if service_type is None or not service_type.blueprint:
            raise RequestValidationError(
                f"No service type with ID {service_type_id}",
                status=404,
                log_code=LogCode.INVENTORY_API,
            )
        return service_type

    async def add_service(
        self,
        ctx: RequestContext,
        deployment_id: str,
        service_type_id: str,
        vnf_id: str = "dummyVnfId",
        vnf_type: str = "dummyVnfType",
        vnf_location: str = "dummyLocation",
    ) -> None:
        """Record a deployment in the inventory."""
        description = {
            "vnfId": vnf_id,
            "vnfType": vnf_type,
            "vnfLocation": vnf_location,
            "typeId": service_type_id,
            "deploymentRef": deployment_id,
            "components": PLACEHOLDER_COMPONENTS,
        }
        await self._request(ctx, "PUT", f"{SERVICES}/{deployment_id}", json=description)
        logger.debug("inventory.service.added", deployment_id=deployment_id, request_id=ctx.request_id)

    async def delete_service(self, ctx: RequestContext, deployment_id: str) -> None:
        await self._request(ctx, "DELETE", f"{SERVICES}/{deployment_id}")
        logger.debug("inventory.service.deleted", deployment_id=deployment_id, request_id=ctx.request_id)

    async def get_services_by_type(
        self, ctx: RequestContext, service_type_id: str | None = None
    ) -> list[ServiceRef]:
        """Deployments known to the inventory, optionally of one service type."""
        params = {"typeId": service_type_id} if service_type_id else None
        response = await self._request(ctx, "GET", SERVICES, params=params, allow_statuses=(404,))
        if response.status_code == 404:
            return []
        return self._decode(ServiceList, response, "service list").items

    async def is_service_healthy(self, ctx: RequestContext) -> bool:
        try:
            response = await self._request(ctx, "GET", SERVICE_HEALTH)
        except DispatcherError as exc:
            if exc.kind == ErrorKind.API:
                return False
            raise
        return response.status_code == 200
