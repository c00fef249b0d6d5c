"""DCAE service inventory client."""

from deployment_handler.inventory.client import InventoryClient, ServiceRef, ServiceType

__all__ = ["InventoryClient", "ServiceRef", "ServiceType"]
