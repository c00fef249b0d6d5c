"""
Start-up configuration from Consul.

When ``CONSUL__HOST`` is set, the JSON document stored under the
``deployment_handler`` KV key supplies defaults, and the Cloudify Manager
and inventory addresses are resolved from the Consul catalog. Values set
in the environment always win.
"""

import asyncio
import json
import time
from collections.abc import Callable
from typing import Any

import consul
import structlog
from pydantic import BaseModel

from deployment_handler.errors import TARGET_CONSUL, DispatcherError, ErrorKind, LogCode
from deployment_handler.logging import log_metrics
from deployment_handler.settings import Settings

logger = structlog.get_logger(__name__)

CLOUDIFY_API_PATH = "/api/v2.1"
INVENTORY_API_PATH = ""

# KV document keys that do not match a settings field
_KV_RENAMES = {
    "listenHost": ("host",),
    "listenPort": ("port",),
    "logLevel": ("observability", "log_level"),
}


class ConsulClient:
    """KV read and catalog lookups through ``py-consul``."""

    target = TARGET_CONSUL

    def __init__(self, host: str, port: int = 8500, scheme: str = "http") -> None:
        self.host = host
        self.port = port
        self._consul = consul.Consul(host=host, port=port, scheme=scheme)

    async def _call(self, what: str, func: Callable[..., Any], *args: Any) -> Any:
        # py-consul is synchronous
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(func, *args)
        except consul.ConsulException as exc:
            self._record(what, 500, started, str(exc))
            raise DispatcherError(
                f"Consul API error on {what}: {exc}",
                status=502,
                kind=ErrorKind.API,
                log_code=LogCode.STARTUP,
                target=TARGET_CONSUL,
            ) from exc
        except OSError as exc:
            self._record(what, 500, started, str(exc))
            raise DispatcherError(
                f"Consul at {self.host}:{self.port} unreachable on {what}: {exc}",
                status=504,
                kind=ErrorKind.SYSTEM,
                log_code=LogCode.STARTUP,
                target=TARGET_CONSUL,
            ) from exc
        self._record(what, 200, started)
        return result

    def _record(self, what: str, response_code: int, started: float, detail: str | None = None) -> None:
        log_metrics(
            None,
            target_entity=TARGET_CONSUL,
            target_service=what,
            response_code=response_code,
            complete=detail is None,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            detail=detail,
        )

    def _invalid(self, what: str, detail: str) -> DispatcherError:
        return DispatcherError(
            f"Invalid response from consul for {what}: {detail}",
            status=502,
            kind=ErrorKind.API,
            log_code=LogCode.STARTUP,
            target=TARGET_CONSUL,
        )

    async def get_key(self, key: str) -> dict[str, Any]:
        """Decoded JSON value of ``key``; empty if the key does not exist."""
        _, data = await self._call(f"key {key}", self._consul.kv.get, key)
        if not data or not data.get("Value"):
            return {}
        try:
            value = json.loads(data["Value"])
        except ValueError as exc:
            raise self._invalid(f"key {key}", "value is not JSON") from exc
        if not isinstance(value, dict):
            raise self._invalid(f"key {key}", "value is not a JSON object")
        return value

    async def get_service_address(self, name: str) -> tuple[str, int]:
        """Address and port of the first catalog entry for ``name``."""
        _, entries = await self._call(f"service {name}", self._consul.catalog.service, name)
        if not entries:
            raise DispatcherError(
                f"No service address found for {name}",
                status=500,
                kind=ErrorKind.SYSTEM,
                log_code=LogCode.STARTUP,
                target=TARGET_CONSUL,
            )
        entry = entries[0]
        # External services carry their address in Address with ServiceAddress empty
        return entry.get("ServiceAddress") or entry["Address"], entry["ServicePort"]


def kv_to_settings(document: dict[str, Any]) -> dict[str, Any]:
    """Map the KV document onto the shape of :class:`Settings`."""
    values: dict[str, Any] = {}
    consul: dict[str, Any] = {}
    for key, value in document.items():
        if key in _KV_RENAMES:
            *parents, leaf = _KV_RENAMES[key]
            target = values
            for parent in parents:
                target = target.setdefault(parent, {})
            target[leaf] = value
        elif key in ("cloudify", "inventory") and isinstance(value, dict):
            section = dict(value)
            if "protocol" in section:
                consul[f"{key}_protocol"] = section.pop("protocol")
            values[key] = section
        else:
            values[key] = value
    if consul:
        values["consul"] = consul
    return values


def _explicit(model: BaseModel) -> dict[str, Any]:
    """Values that were set explicitly (environment, .env or keyword)."""
    result: dict[str, Any] = {}
    for name in model.model_fields_set:
        value = getattr(model, name)
        result[name] = _explicit(value) if isinstance(value, BaseModel) else value
    return result


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


async def load_settings(base: Settings) -> Settings:
    """
    Complete ``base`` with configuration held in Consul.

    Args:
        base: Settings read from the environment

    Returns:
        ``base`` itself when no Consul host is configured, otherwise a new
        Settings object

    Raises:
        DispatcherError: Consul could not be read or lacks a required service
    """
    if not base.consul.host:
        return base

    client = ConsulClient(base.consul.host, base.consul.port)
    document = await client.get_key(base.consul.config_key)
    values = kv_to_settings(document)
    explicit = _explicit(base)
    protocols = _merge(values.get("consul", {}), explicit.get("consul", {}))

    for section, service, path in (
        ("cloudify", base.consul.cloudify_service, CLOUDIFY_API_PATH),
        ("inventory", base.consul.inventory_service, INVENTORY_API_PATH),
    ):
        if explicit.get(section, {}).get("url"):
            continue
        address, port = await client.get_service_address(service)
        protocol = protocols.get(f"{section}_protocol", "https")
        values.setdefault(section, {})["url"] = f"{protocol}://{address}:{port}{path}"

    merged = _merge(values, explicit)
    merged["server_instance_uuid"] = base.server_instance_uuid
    logger.info(
        "config.consul.loaded",
        key=base.consul.config_key,
        cloudify_url=merged.get("cloudify", {}).get("url"),
        inventory_url=merged.get("inventory", {}).get("url"),
    )
    return Settings(**merged)
