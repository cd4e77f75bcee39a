"""dronewatch: drone telemetry ingestion, fan-out and an observer fallback cascade."""

from __future__ import annotations

__version__ = "0.1.0"
