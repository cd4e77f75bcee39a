"""``dronewatch serve``: ingestion, fan-out hub and pull API in one process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING, Any

import click

from dronewatch._internal.async_utils import run_async
from dronewatch.errors import ConfigError

if TYPE_CHECKING:
    from dronewatch.cli.main import AppContext

logger = logging.getLogger(__name__)


def install_shutdown_handler() -> asyncio.Event:
    """Return an event set on SIGTERM, for graceful container/systemd shutdown."""
    shutdown_event = asyncio.Event()

    def _handle_sigterm() -> None:
        logger.info("SIGTERM received, shutting down gracefully")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    # loop.add_signal_handler is Unix-only
    if hasattr(signal, "SIGTERM"):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGTERM, _handle_sigterm)
    return shutdown_event


async def wait_for_shutdown(shutdown_event: asyncio.Event) -> None:
    """Block until *shutdown_event* is set or the task is cancelled (Ctrl+C)."""
    with contextlib.suppress(asyncio.CancelledError):
        await shutdown_event.wait()


def settings_from_options(**overrides: Any) -> Any:
    """Build :class:`AppSettings`, CLI flags taking precedence over env/.env."""
    from pydantic import ValidationError

    from dronewatch.models.config import AppSettings

    try:
        return AppSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc


@click.command("serve")
@click.option("--host", default=None, help="Bind address (default: 0.0.0.0)")
@click.option("--http-port", type=int, default=None, help="Pull API port (default: 3000)")
@click.option("--ws-port", type=int, default=None, help="Fan-out WebSocket port (default: 3001)")
@click.option("--broker-url", default=None, help="MQTT broker URL (mqtt://host:port)")
@click.option(
    "--transport",
    "transport_kind",
    type=click.Choice(["mqtt", "memory"]),
    default="mqtt",
    help="Ingestion transport (memory keeps everything in-process)",
)
@click.option(
    "--simulate/--no-simulate",
    default=False,
    help="Publish synthetic fleet readings into the transport",
)
@click.option(
    "--simulate-interval",
    type=float,
    default=5.0,
    show_default=True,
    help="Seconds between synthetic ticks",
)
@click.option("--seed", type=int, default=None, help="Seed for the synthetic fleet")
@click.pass_obj
def serve_cmd(
    app_ctx: AppContext,
    host: str | None,
    http_port: int | None,
    ws_port: int | None,
    broker_url: str | None,
    transport_kind: str,
    simulate: bool,
    simulate_interval: float,
    seed: int | None,
) -> None:
    """Start the ingestion adapter, fan-out hub and pull API."""
    settings = settings_from_options(
        host=host, http_port=http_port, ws_port=ws_port, broker_url=broker_url
    )
    run_async(
        _cmd_serve(
            app_ctx,
            settings,
            transport_kind=transport_kind,
            simulate=simulate,
            simulate_interval=simulate_interval,
            seed=seed,
        )
    )


async def _cmd_serve(
    app_ctx: AppContext,
    settings: Any,
    *,
    transport_kind: str,
    simulate: bool,
    simulate_interval: float,
    seed: int | None,
) -> None:
    from dronewatch.app import Application, build_transport

    formatter = app_ctx.formatter
    application = Application(
        settings,
        transport=build_transport(settings, transport_kind),
        simulate=simulate,
        simulate_interval=simulate_interval,
        seed=seed,
    )
    shutdown_event = install_shutdown_handler()

    async with application:
        if formatter.format == "rich":
            formatter.rich.info(
                f"Pull API on http://{settings.host}:{settings.http_port}, "
                f"fan-out on ws://{settings.host}:{settings.ws_port}{settings.ws_path}"
            )
            if simulate:
                formatter.rich.info(f"[dim]Simulating fleet every {simulate_interval:g}s[/dim]")
            formatter.rich.info("Press Ctrl+C to stop.")
        elif formatter.format == "json":
            formatter.output_line(
                {
                    "httpPort": settings.http_port,
                    "wsPort": settings.ws_port,
                    "wsPath": settings.ws_path,
                    "transport": transport_kind,
                    "simulate": simulate,
                },
                command="serve",
            )
        await wait_for_shutdown(shutdown_event)

    if formatter.format == "rich":
        status = application.status()
        formatter.rich.info(
            f"[dim]Stopped after {status['ingestion']['readings']} readings, "
            f"{status['hub']['broadcasts']} broadcasts[/dim]"
        )
