from __future__ import annotations

from dronewatch.models.agent import (
    OFFLINE_THRESHOLD,
    Agent,
    AgentStatus,
    MetricSnapshot,
    Position,
    Reading,
)
from dronewatch.models.config import AppSettings, ObserverConfig

__all__ = [
    "OFFLINE_THRESHOLD",
    "Agent",
    "AgentStatus",
    "AppSettings",
    "MetricSnapshot",
    "ObserverConfig",
    "Position",
    "Reading",
]
