"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: CLOUDIFY__URL=https://cm/api/v2.1
"""

import uuid
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("deployment-handler", description="Application name")
    app_version: str = Field("4.1.0", description="Server version")
    api_version: str = Field("4.1.0", description="Version of the HTTP API")
    server_instance_uuid: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Identifies this process in responses and logs",
    )

    host: str = Field("0.0.0.0", description="Server host")  # nosec B104
    port: int = Field(8443, description="Server port")

    ssl_certfile: str | None = Field(None, description="TLS certificate (PEM)")
    ssl_keyfile: str | None = Field(None, description="TLS private key (PEM)")

    # user name -> password; empty means no authentication
    auth: dict[str, str] = Field(default_factory=dict, description="Basic auth users")

    # ============================================================
    # Cloudify Manager
    # ============================================================

    class CloudifySettings(BaseModel):
        """Workload orchestrator (Cloudify Manager) configuration."""

        url: str | None = Field(None, description="Cloudify REST API root, e.g. https://cm/api/v2.1")
        user: str | None = Field(None, description="Basic auth user")
        password: str | None = Field(None, description="Basic auth password")
        tenant: str = Field("default_tenant", description="Tenant used when the request names none")
        verify_ssl: bool = Field(True, description="Verify TLS certificates")
        timeout: float = Field(30.0, description="Per-request timeout in seconds")
        page_size: int = Field(1000, description="Page size for node-instance listing")

        creation_poll_interval: float = Field(30.0, description="Seconds between creation polls")
        creation_max_attempts: int = Field(10, description="Creation polls before giving up")
        workflow_poll_interval: float = Field(5.0, description="Seconds between execution polls")
        workflow_max_attempts: int = Field(720, description="Execution polls before giving up")
        conflict_retry_interval: float = Field(
            5.0, description="Seconds between retries of a start that hit a running execution"
        )
        conflict_max_retries: int = Field(720, description="Retries before a queue is dropped")

        @field_validator("url")
        @classmethod
        def strip_trailing_slash(cls, value: str | None) -> str | None:
            return value.rstrip("/") if value else value

    cloudify: CloudifySettings = CloudifySettings()  # type: ignore[call-arg]

    # ============================================================
    # Inventory
    # ============================================================

    class InventorySettings(BaseModel):
        """Service inventory configuration."""

        url: str | None = Field(None, description="Inventory API root")
        user: str | None = Field(None, description="Basic auth user")
        password: str | None = Field(None, description="Basic auth password")
        verify_ssl: bool = Field(True, description="Verify TLS certificates")
        timeout: float = Field(30.0, description="Per-request timeout in seconds")

        @field_validator("url")
        @classmethod
        def strip_trailing_slash(cls, value: str | None) -> str | None:
            return value.rstrip("/") if value else value

    inventory: InventorySettings = InventorySettings()  # type: ignore[call-arg]

    # ============================================================
    # Consul (optional configuration source)
    # ============================================================

    class ConsulSettings(BaseModel):
        """Consul KV/catalog used to acquire configuration at start-up."""

        host: str | None = Field(None, description="Consul host; unset disables Consul")
        port: int = Field(8500, description="Consul HTTP port")
        config_key: str = Field("deployment_handler", description="KV key holding JSON config")
        cloudify_service: str = Field("cloudify_manager", description="Catalog name of Cloudify")
        inventory_service: str = Field("inventory", description="Catalog name of inventory")
        cloudify_protocol: str = Field("https", description="Scheme for the Cloudify address")
        inventory_protocol: str = Field("https", description="Scheme for the inventory address")

    consul: ConsulSettings = ConsulSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Minimum log level")
        log_format: str = Field("json", description="json or console")

        @field_validator("log_level", mode="before")
        @classmethod
        def upper_level(cls, value: object) -> object:
            return value.upper() if isinstance(value, str) else value

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    def missing_required(self) -> list[str]:
        """Names of required settings that have no value."""
        missing = []
        if not self.cloudify.url:
            missing.append("cloudify.url")
        if not self.inventory.url:
            missing.append("inventory.url")
        return missing


settings = Settings()  # type: ignore[call-arg]


def get_settings() -> Settings:
    """Return the process-wide settings object."""
    return settings
