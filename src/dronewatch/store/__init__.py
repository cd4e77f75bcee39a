"""In-process agent registry and reading log."""

from __future__ import annotations

from dronewatch.store.agents import AgentRegistry
from dronewatch.store.readings import ReadingStore
from dronewatch.store.time_range import DEFAULT_TIME_RANGE, TIME_RANGES, resolve_since

__all__ = [
    "DEFAULT_TIME_RANGE",
    "TIME_RANGES",
    "AgentRegistry",
    "ReadingStore",
    "resolve_since",
]
