"""
Command line entry point for the deployment handler.
"""

import click
import uvicorn

from deployment_handler.errors import TARGET_SELF, DispatcherError, LogCode
from deployment_handler.logging import log_error
from deployment_handler.settings import get_settings


@click.group()
def cli() -> None:
    """Deployment handler for Cloudify Manager."""
    pass


@cli.command()
@click.option("--host", default=None, help="Listen address (default from settings)")
@click.option("--port", default=None, type=int, help="Listen port (default from settings)")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP(S) server."""
    settings = get_settings()
    ssl_options = {}
    if settings.ssl_certfile and settings.ssl_keyfile:
        ssl_options = {"ssl_certfile": settings.ssl_certfile, "ssl_keyfile": settings.ssl_keyfile}

    listen_host = host or settings.host
    listen_port = port or settings.port
    click.echo(f"Starting {settings.app_name} {settings.app_version} on {listen_host}:{listen_port}")

    try:
        uvicorn.run(
            "deployment_handler.main:app",
            host=listen_host,
            port=listen_port,
            log_level=settings.observability.log_level.value.lower(),
            **ssl_options,
        )
    except OSError as exc:
        log_error(
            DispatcherError(
                f"Server initialization failed: {exc}",
                log_code=LogCode.SERVER_INITIALIZATION,
                target=TARGET_SELF,
            )
        )
        raise SystemExit(1) from exc


@cli.command()
def show_config() -> None:
    """Print the effective settings read from the environment (passwords masked)."""
    settings = get_settings()
    data = settings.model_dump(mode="json")
    for section in ("cloudify", "inventory"):
        if data[section].get("password"):
            data[section]["password"] = "********"
    data["auth"] = {user: "********" for user in data.get("auth", {})}
    for key, value in data.items():
        click.echo(f"{key}: {value}")


if __name__ == "__main__":
    cli()
