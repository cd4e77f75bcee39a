"""Pull-surface commands: ``dronewatch agents`` and ``dronewatch command``."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click

from dronewatch._internal.async_utils import run_async

if TYPE_CHECKING:
    from dronewatch.cli.main import AppContext

_DEFAULT_PULL_URL = "http://localhost:3000"

_pull_url_option = click.option(
    "--pull-url",
    default=_DEFAULT_PULL_URL,
    envvar="DRONEWATCH_PULL_URL",
    show_default=True,
    help="Pull API base URL",
)


def _parse_params(raw: tuple[str, ...]) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a parameter dict; numeric values become numbers."""
    params: dict[str, Any] = {}
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--param")
        try:
            params[key] = int(value)
        except ValueError:
            try:
                params[key] = float(value)
            except ValueError:
                params[key] = value
    return params


@click.command("agents")
@_pull_url_option
@click.pass_obj
def agents_cmd(app_ctx: AppContext, pull_url: str) -> None:
    """List known agents and whether they are online."""
    run_async(_cmd_agents(app_ctx, pull_url))


async def _cmd_agents(app_ctx: AppContext, pull_url: str) -> None:
    from dronewatch.api.client import PullClient

    formatter = app_ctx.formatter
    async with PullClient(pull_url) as client:
        agents = await client.list_agents()

    if formatter.format == "json":
        formatter.output(agents, command="agents")
    elif formatter.format == "rich":
        if not agents:
            formatter.rich.info("[dim]No agents have reported yet.[/dim]")
            return
        formatter.rich.agent_list(agents)


@click.command("command")
@click.argument("agent_id", metavar="AGENT")
@click.argument("command")
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Command parameter as key=value (repeatable)",
)
@_pull_url_option
@click.pass_obj
def command_cmd(
    app_ctx: AppContext,
    agent_id: str,
    command: str,
    params: tuple[str, ...],
    pull_url: str,
) -> None:
    """Send COMMAND to AGENT through the pull API."""
    run_async(_cmd_command(app_ctx, pull_url, agent_id, command, _parse_params(params)))


async def _cmd_command(
    app_ctx: AppContext,
    pull_url: str,
    agent_id: str,
    command: str,
    parameters: dict[str, Any],
) -> None:
    from dronewatch.api.client import PullClient

    formatter = app_ctx.formatter
    async with PullClient(pull_url) as client:
        result = await client.send_command(agent_id, command, parameters)

    success = bool(result.get("success"))
    if formatter.format == "json":
        formatter.output(result, command="command")
    else:
        formatter.rich.command_result(success, str(result.get("message", "")))
    if not success:
        raise SystemExit(1)
