from __future__ import annotations

from typing import TYPE_CHECKING

from rich.table import Table

if TYPE_CHECKING:
    from datetime import datetime

    from rich.console import Console

    from dronewatch.models.agent import Agent
    from dronewatch.observer.state import TelemetryView

_SOURCE_STYLE = {"push": "green", "pull": "yellow", "synthetic": "magenta"}


def _fmt(value: float | None, unit: str = "") -> str:
    return "-" if value is None else f"{value:g}{unit}"


def _fmt_time(value: datetime | None) -> str:
    return "-" if value is None else value.strftime("%H:%M:%S")


class RichOutput:
    """Rich-based terminal output helpers for *dronewatch*."""

    def __init__(self, console: Console) -> None:
        self._con = console

    # ------------------------------------------------------------------
    # Agent list
    # ------------------------------------------------------------------

    def agent_list(self, agents: list[Agent], *, now: datetime | None = None) -> None:
        """Print a table of agents with derived online state."""
        table = Table(title="Drones")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Online")
        table.add_column("Battery", justify="right")
        table.add_column("Location")
        table.add_column("Last seen")

        for agent in agents:
            online = agent.is_online(now)
            online_label = "[green]yes[/green]" if online else "[yellow]no[/yellow]"
            location = (
                f"{agent.position.lat:.5f}, {agent.position.lng:.5f}" if agent.position else "-"
            )
            table.add_row(
                agent.agent_id,
                agent.name,
                str(agent.status),
                online_label,
                _fmt(agent.metrics.battery, "%"),
                location,
                _fmt_time(agent.last_seen),
            )

        self._con.print(table)

    # ------------------------------------------------------------------
    # Observer view
    # ------------------------------------------------------------------

    def telemetry_view(self, view: TelemetryView) -> None:
        """Print one line summarising the current observer projection."""
        style = _SOURCE_STYLE.get(str(view.active_source), "white")
        parts = [
            f"[dim]{_fmt_time(view.last_update)}[/dim]",
            f"[{style}]{view.active_source}[/{style}]",
        ]
        reading = view.current_reading
        if reading is None:
            parts.append("[dim]no data yet[/dim]")
        else:
            parts.append(f"[cyan]{reading.agent_id}[/cyan] {reading.status}")
            parts.append(f"bat {_fmt(reading.battery, '%')}")
            parts.append(f"alt {_fmt(reading.altitude, 'm')}")
            parts.append(f"spd {_fmt(reading.speed, 'km/h')}")
            parts.append(f"({reading.lat:.5f}, {reading.lng:.5f})")
        parts.append(f"[dim]{len(view.agents)} agents, {len(view.history)} in history[/dim]")
        if view.error:
            parts.append(f"[red]{view.error}[/red]")
        self._con.print("  ".join(parts))

    # ------------------------------------------------------------------
    # Command result helpers
    # ------------------------------------------------------------------

    def command_result(self, success: bool, message: str = "") -> None:
        """Print a coloured OK / FAILED indicator."""
        text = "[green]OK[/green]" if success else "[red]FAILED[/red]"
        if message:
            text += f"  {message}"
        self._con.print(text)

    def error(self, message: str) -> None:
        """Print a bold red error line."""
        self._con.print(f"[bold red]Error:[/bold red] {message}")

    def info(self, message: str) -> None:
        """Print an informational message (plain)."""
        self._con.print(message)
