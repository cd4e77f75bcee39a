"""Agent and reading models.

Readings are immutable once built. Agents are snapshots: the registry
replaces them wholesale on every update, so a reference handed to a reader
never changes underneath it. The online flag is never stored; it is derived
from ``last_seen`` each time it is asked for.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

OFFLINE_THRESHOLD = timedelta(minutes=2)


class AgentStatus(StrEnum):
    """The ten canonical agent statuses."""

    STANDBY = "Standby"
    PRE_FLIGHT = "Pre-Flight"
    ACTIVE = "Active"
    IN_FLIGHT = "In Flight"
    LANDING = "Landing"
    DELIVERED = "Delivered"
    RETURNING = "Returning"
    POWERED_OFF = "Powered Off"
    MAINTENANCE = "Maintenance"
    EMERGENCY = "Emergency"


class Position(BaseModel):
    """A WGS-84 coordinate pair in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = 0.0
    lng: float = 0.0


class MetricSnapshot(BaseModel):
    """Last-known sensor values. ``None`` means never reported."""

    model_config = ConfigDict(frozen=True)

    battery: float | None = None
    temperature: float | None = None
    humidity: float | None = None
    speed: float | None = None
    altitude: float | None = None

    def merged(self, newer: MetricSnapshot) -> MetricSnapshot:
        """Return a copy with every non-null value from *newer* applied."""
        return self.model_copy(update=newer.model_dump(exclude_none=True))


class Reading(BaseModel):
    """One timestamped observation for an agent, in canonical shape."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    agent_id: str = Field(alias="droneId")
    timestamp: datetime
    battery: float | None = None
    temperature: float | None = None
    humidity: float | None = None
    speed: float | None = None
    altitude: float | None = None
    lat: float = 0.0
    lng: float = 0.0
    status: AgentStatus = AgentStatus.STANDBY

    @model_validator(mode="before")
    @classmethod
    def _flatten_location(cls, data: Any) -> Any:
        # Older producers nest the coordinates under ``location``.
        if isinstance(data, dict) and "lat" not in data and isinstance(data.get("location"), dict):
            loc = data["location"]
            data = {**data, "lat": loc.get("latitude", 0.0), "lng": loc.get("longitude", 0.0)}
        return data

    @property
    def position(self) -> Position:
        return Position(lat=self.lat, lng=self.lng)

    @property
    def metrics(self) -> MetricSnapshot:
        return MetricSnapshot(
            battery=self.battery,
            temperature=self.temperature,
            humidity=self.humidity,
            speed=self.speed,
            altitude=self.altitude,
        )

    def to_wire(self) -> dict[str, Any]:
        """Return the canonical reading JSON object."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Reading:
        return cls.model_validate(data)


class Agent(BaseModel):
    """Current-state snapshot of one tracked agent."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    name: str
    status: AgentStatus = AgentStatus.STANDBY
    last_seen: datetime
    position: Position | None = None
    metrics: MetricSnapshot = Field(default_factory=MetricSnapshot)

    def is_online(
        self,
        now: datetime | None = None,
        threshold: timedelta = OFFLINE_THRESHOLD,
    ) -> bool:
        """Return ``True`` when the agent reported within *threshold* of *now*."""
        if now is None:
            now = datetime.now(UTC)
        return now - self.last_seen < threshold

    def to_wire(
        self,
        now: datetime | None = None,
        threshold: timedelta = OFFLINE_THRESHOLD,
    ) -> dict[str, Any]:
        """Return the agent record observers receive, online flag freshly derived."""
        return {
            "id": self.agent_id,
            "name": self.name,
            "status": str(self.status),
            "isOnline": self.is_online(now, threshold),
            "lastSeen": self.last_seen.isoformat(),
            "battery": self.metrics.battery,
            "lastLocation": self.position.model_dump() if self.position else None,
            "lastTelemetry": self.metrics.model_dump(),
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Agent:
        """Build an agent from its wire record. ``isOnline`` is ignored."""
        metrics = MetricSnapshot.model_validate(data.get("lastTelemetry") or {})
        if metrics.battery is None and data.get("battery") is not None:
            metrics = metrics.model_copy(update={"battery": float(data["battery"])})
        location = data.get("lastLocation")
        return cls(
            agent_id=str(data["id"]),
            name=str(data.get("name") or f"Drone {data['id']}"),
            status=data.get("status") or AgentStatus.STANDBY,
            last_seen=data["lastSeen"],
            position=Position.model_validate(location) if location else None,
            metrics=metrics,
        )
