"""``dronewatch watch``: follow one observer's source cascade live."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import click

from dronewatch._internal.async_utils import run_async
from dronewatch.cli.serve import install_shutdown_handler, wait_for_shutdown

if TYPE_CHECKING:
    from dronewatch.cli.main import AppContext
    from dronewatch.models.config import ObserverConfig
    from dronewatch.observer.state import TelemetryView

logger = logging.getLogger(__name__)


@click.command("watch")
@click.option("--push-url", default=None, help="Fan-out hub WebSocket URL")
@click.option("--pull-url", default=None, help="Pull API base URL")
@click.option("--no-push", is_flag=True, default=False, help="Never use the push channel")
@click.option("--no-pull", is_flag=True, default=False, help="Never use pull queries")
@click.option("--agent", "agent_id", default=None, help="Agent to follow (default: first seen)")
@click.option("--poll-interval", type=float, default=None, help="Seconds between pull queries")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Observer config JSON file",
)
@click.pass_obj
def watch_cmd(
    app_ctx: AppContext,
    push_url: str | None,
    pull_url: str | None,
    no_push: bool,
    no_pull: bool,
    agent_id: str | None,
    poll_interval: float | None,
    config_path: Path | None,
) -> None:
    """Print every change an observer sees, with the tier serving it."""
    from dronewatch.models.config import ObserverConfig

    config = ObserverConfig.load(config_path).merge_overrides(
        push_url=push_url,
        pull_url=pull_url,
        enable_push=False if no_push else None,
        enable_pull=False if no_pull else None,
        poll_interval=poll_interval,
    )
    run_async(_cmd_watch(app_ctx, config, agent_id))


async def _cmd_watch(app_ctx: AppContext, config: ObserverConfig, agent_id: str | None) -> None:
    from dronewatch.observer import SourceSelector

    formatter = app_ctx.formatter
    shutdown_event = install_shutdown_handler()

    async def _render(view: TelemetryView) -> None:
        if formatter.format == "json":
            formatter.output_line(view, command="watch")
        elif formatter.format == "rich":
            formatter.rich.telemetry_view(view)

    selector = SourceSelector.from_config(config, agent_id=agent_id)
    with selector.subscribe(_render):
        async with selector:
            if formatter.format == "rich":
                sources = [
                    name
                    for name, enabled in (
                        ("push", selector.push_enabled),
                        ("pull", selector.pull_enabled),
                    )
                    if enabled
                ]
                formatter.rich.info(
                    f"Watching via {' > '.join([*sources, 'synthetic'])}. Press Ctrl+C to stop."
                )
            await wait_for_shutdown(shutdown_event)
