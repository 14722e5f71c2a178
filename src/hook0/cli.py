"""Command line entry point of the Hook0 delivery engine.

Examples:
    hook0-worker run --name eu-west-1 --concurrency 8
    hook0-worker dispatch-pending
    hook0-worker serve --port 8080
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

import click

from hook0 import __version__
from hook0.config import Settings
from hook0.exceptions import Hook0Error
from hook0.logging import configure_logging, get_logger
from hook0.service import Hook0Service

logger = get_logger(__name__)


def _overrides(**options: Any) -> dict[str, Any]:
    return {key: value for key, value in options.items() if value is not None}


@click.group()
@click.version_option(version=__version__, prog_name="hook0-worker")
@click.option(
    "--database",
    envvar="HOOK0_DATABASE_PATH",
    default=None,
    help="SQLite database of the Attempt Store",
)
@click.option("--log-level", envvar="HOOK0_LOG_LEVEL", default=None, help="Logging level")
@click.option(
    "--log-format",
    envvar="HOOK0_LOG_FORMAT",
    type=click.Choice(["json", "text"]),
    default=None,
    help="Log output format",
)
@click.pass_context
def cli(
    ctx: click.Context,
    database: str | None,
    log_level: str | None,
    log_format: str | None,
) -> None:
    """Hook0 webhook delivery engine."""
    settings = Settings()
    updates = _overrides(
        database_path=database, log_level=log_level, log_format=log_format
    )
    if updates:
        settings = settings.model_copy(update=updates)
    configure_logging(level=settings.log_level, format=settings.log_format)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command("run")
@click.option("--name", default=None, help="Worker name recorded on attempts")
@click.option("--worker-version", default=None, help="Worker version recorded on attempts")
@click.option(
    "--dedicated",
    is_flag=True,
    help="Serve only subscriptions naming this worker",
)
@click.option("--concurrency", type=click.IntRange(1, 256), default=None, help="Number of units")
@click.option(
    "--disable-target-ip-check",
    is_flag=True,
    help="Allow targets resolving to private or loopback addresses",
)
@click.pass_context
def run(
    ctx: click.Context,
    name: str | None,
    worker_version: str | None,
    dedicated: bool,
    concurrency: int | None,
    disable_target_ip_check: bool,
) -> None:
    """Claim and deliver request attempts until interrupted."""
    settings: Settings = ctx.obj["settings"]
    updates = _overrides(
        name=name,
        version=worker_version,
        dedicated=dedicated or None,
        concurrency=concurrency,
        disable_target_ip_check=disable_target_ip_check or None,
    )
    if updates:
        settings = settings.model_copy(
            update={"worker": settings.worker.model_copy(update=updates)}
        )

    try:
        asyncio.run(_run_pool(settings))
    except Hook0Error as e:
        raise click.ClickException(f"Worker stopped: {e.message}") from e


async def _run_pool(settings: Settings) -> None:
    async with Hook0Service.create(settings) as service:
        pool = service.worker_pool()

        def request_stop() -> None:
            logger.info("Shutdown requested, finishing in-flight attempts")
            pool.stop()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, request_stop)
        try:
            await pool.run()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


@cli.command("dispatch-pending")
@click.option("--limit", type=click.IntRange(1), default=100, help="Events to recover")
@click.pass_context
def dispatch_pending(ctx: click.Context, limit: int) -> None:
    """Create attempts for stored events whose dispatch never completed."""
    settings: Settings = ctx.obj["settings"]

    async def _dispatch() -> int:
        async with Hook0Service.create(settings) as service:
            return await service.dispatch_pending(limit=limit)

    try:
        created = asyncio.run(_dispatch())
    except Hook0Error as e:
        raise click.ClickException(e.message) from e
    click.echo(f"Created {created} request attempt(s)")


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8080, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the HTTP API (ingestion, history, replay)."""
    import uvicorn

    from hook0.api import create_app

    settings: Settings = ctx.obj["settings"]
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


def main() -> None:
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
