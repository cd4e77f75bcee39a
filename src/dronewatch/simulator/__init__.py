"""Synthetic fleet: local fallback data and a development publisher."""

from __future__ import annotations

from dronewatch.simulator.generator import (
    DEFAULT_DESTINATIONS,
    DEFAULT_FLEET,
    AgentProfile,
    Destination,
    GeneratorSettings,
    MissionPhase,
    SyntheticGenerator,
)
from dronewatch.simulator.publisher import SimulationPublisher

__all__ = [
    "DEFAULT_DESTINATIONS",
    "DEFAULT_FLEET",
    "AgentProfile",
    "Destination",
    "GeneratorSettings",
    "MissionPhase",
    "SimulationPublisher",
    "SyntheticGenerator",
]
