"""Observer side: push session plus the push/pull/synthetic source cascade."""

from __future__ import annotations

from dronewatch.observer.selector import SourceSelector
from dronewatch.observer.session import ObserverSession, backoff_delay
from dronewatch.observer.state import DataSource, SelectorState, TelemetryView

__all__ = [
    "DataSource",
    "ObserverSession",
    "SelectorState",
    "SourceSelector",
    "TelemetryView",
    "backoff_delay",
]
