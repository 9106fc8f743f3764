"""
UCP commerce command-line entry point.

Usage:
    ucp-commerce [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .api.dependencies import build_container
from .api.middleware import setup_logging
from .config import load_settings
from .handlers.registry import build_default_registry
from .models.checkout import utcnow

console = Console()


@click.group()
@click.version_option(version=__version__, message="%(prog)s %(version)s")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Read settings from this .env file")
@click.pass_context
def main(ctx, env_file: str | None):
    """UCP commerce server - agentic checkout over REST and MCP."""
    ctx.ensure_object(dict)
    settings = load_settings(env_file)
    setup_logging(json_format=settings.json_logs, level=settings.log_level)
    ctx.obj["settings"] = settings


@main.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=3000, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host: str, port: int, reload: bool):
    """Run the HTTP server."""
    import uvicorn

    uvicorn.run(
        "ucp_commerce.api.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_config=None,
    )


@main.command("sweep-webhooks")
@click.pass_context
def sweep_webhooks(ctx):
    """Run one pass of the webhook retry queue."""
    container = build_container(ctx.obj["settings"])

    async def run() -> int:
        try:
            return await container.webhooks.process_retry_queue()
        finally:
            await container.close()

    attempted = asyncio.run(run())
    console.print(f"[green]Retried {attempted} webhook deliveries[/green]")


@main.command()
@click.option("--retention-days", type=int, default=None, help="Keep sent deliveries this many days")
@click.pass_context
def cleanup(ctx, retention_days: int | None):
    """Delete old sent deliveries and expired checkout sessions."""
    container = build_container(ctx.obj["settings"])

    async def run() -> tuple[int, int]:
        try:
            deliveries = await container.webhooks.cleanup(retention_days)
            sessions = await container.sessions.delete_expired(utcnow())
            return deliveries, sessions
        finally:
            await container.close()

    deliveries, sessions = asyncio.run(run())
    console.print(f"Removed [cyan]{deliveries}[/cyan] deliveries and [cyan]{sessions}[/cyan] expired sessions")


@main.command()
@click.pass_context
def handlers(ctx):
    """Show payment handler availability."""
    registry = build_default_registry(ctx.obj["settings"])
    table = Table(title="Payment Handlers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Description")
    table.add_column("Configured")

    for handler in registry.available_handler_types():
        configured = "[green]yes[/green]" if handler["configured"] else "[yellow]no[/yellow]"
        table.add_row(handler["id"], handler["name"], handler["description"], configured)

    console.print(table)
    asyncio.run(registry.close())


if __name__ == "__main__":
    main()
