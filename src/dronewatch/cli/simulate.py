"""``dronewatch simulate``: publish a synthetic fleet to a broker."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import click

from dronewatch._internal.async_utils import run_async
from dronewatch.cli.serve import install_shutdown_handler, settings_from_options

if TYPE_CHECKING:
    from dronewatch.cli.main import AppContext


@click.command("simulate")
@click.option("--broker-url", default=None, help="MQTT broker URL (mqtt://host:port)")
@click.option("--interval", type=float, default=5.0, show_default=True, help="Seconds per tick")
@click.option("--seed", type=int, default=None, help="Seed for reproducible runs")
@click.option("--ticks", type=int, default=None, help="Stop after this many ticks")
@click.pass_obj
def simulate_cmd(
    app_ctx: AppContext,
    broker_url: str | None,
    interval: float,
    seed: int | None,
    ticks: int | None,
) -> None:
    """Publish synthetic drone readings as a field producer would."""
    settings = settings_from_options(broker_url=broker_url, mqtt_client_id="dronewatch-simulator")
    run_async(_cmd_simulate(app_ctx, settings, interval=interval, seed=seed, ticks=ticks))


async def _cmd_simulate(
    app_ctx: AppContext,
    settings: Any,
    *,
    interval: float,
    seed: int | None,
    ticks: int | None,
) -> None:
    from dronewatch.app import build_transport
    from dronewatch.simulator import SimulationPublisher, SyntheticGenerator

    formatter = app_ctx.formatter
    transport = build_transport(settings)
    publisher = SimulationPublisher(
        transport,
        SyntheticGenerator(seed=seed),
        interval=interval,
        topic_prefix=settings.topic_prefix,
    )
    shutdown_event = install_shutdown_handler()

    done = 0
    await transport.start()
    try:
        publisher.announce()
        while not shutdown_event.is_set():
            count = publisher.publish_tick()
            done += 1
            if formatter.format == "rich":
                formatter.rich.info(f"[dim]tick {done}: published {count} readings[/dim]")
            if ticks is not None and done >= ticks:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
    except asyncio.CancelledError:
        pass
    finally:
        await transport.stop()

    formatter.output(
        {"ticks": done, "published": publisher.published_count},
        command="simulate",
    )
