"""Observer-side state: selector states, data sources and the read-only view."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime

    from dronewatch.models.agent import Agent, Reading


class DataSource(StrEnum):
    PUSH = "push"
    PULL = "pull"
    SYNTHETIC = "synthetic"


class SelectorState(StrEnum):
    PUSH_CONNECTING = "PUSH_CONNECTING"
    PUSH_CONNECTED = "PUSH_CONNECTED"
    PULL_POLLING = "PULL_POLLING"
    SYNTHETIC_FALLBACK = "SYNTHETIC_FALLBACK"


STATE_SOURCE: dict[SelectorState, DataSource] = {
    SelectorState.PUSH_CONNECTING: DataSource.PUSH,
    SelectorState.PUSH_CONNECTED: DataSource.PUSH,
    SelectorState.PULL_POLLING: DataSource.PULL,
    SelectorState.SYNTHETIC_FALLBACK: DataSource.SYNTHETIC,
}


@dataclass(frozen=True, slots=True)
class TelemetryView:
    """What a consumer sees: last good values plus which tier is serving them."""

    state: SelectorState
    active_source: DataSource
    connected: bool
    agents: tuple[Agent, ...]
    current_reading: Reading | None
    history: tuple[Reading, ...]
    last_update: datetime | None
    error: str | None
    selected_agent: str | None
    reconnect_attempts: int

    @property
    def degraded(self) -> bool:
        return self.active_source is not DataSource.PUSH or not self.connected

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": str(self.state),
            "activeSource": str(self.active_source),
            "connected": self.connected,
            "selectedAgent": self.selected_agent,
            "agents": [agent.to_wire() for agent in self.agents],
            "currentReading": self.current_reading.to_wire() if self.current_reading else None,
            "historyLength": len(self.history),
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
            "error": self.error,
            "reconnectAttempts": self.reconnect_attempts,
        }
