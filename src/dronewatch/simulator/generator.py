"""Synthetic drone fleet.

Each simulated agent runs a small mission state machine::

    idle -> preparing -> flying -> delivering -> returning -> idle

One call to :meth:`SyntheticGenerator.tick` advances every agent by exactly
one fixed step of the generator's own clock and returns one reading per
agent. Nothing here reads wall time or sleeps, so a seeded generator is
fully deterministic.

Arrival is detected by distance *or* by a per-tick random chance, so a
flight can end short of its destination. Only fallback data is affected.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, Field

from dronewatch.models.agent import Agent, AgentStatus, MetricSnapshot, Position, Reading


class MissionPhase(StrEnum):
    IDLE = "idle"
    PREPARING = "preparing"
    FLYING = "flying"
    DELIVERING = "delivering"
    RETURNING = "returning"


PHASE_STATUS: dict[MissionPhase, AgentStatus] = {
    MissionPhase.IDLE: AgentStatus.STANDBY,
    MissionPhase.PREPARING: AgentStatus.PRE_FLIGHT,
    MissionPhase.FLYING: AgentStatus.IN_FLIGHT,
    MissionPhase.DELIVERING: AgentStatus.DELIVERED,
    MissionPhase.RETURNING: AgentStatus.RETURNING,
}


@dataclass(frozen=True, slots=True)
class Destination:
    name: str
    lat: float
    lng: float


@dataclass(frozen=True, slots=True)
class AgentProfile:
    """Static characteristics of one simulated agent."""

    agent_id: str
    name: str
    base_lat: float
    base_lng: float
    battery_decay_rate: float
    max_speed: float
    """Cruise speed in km/h."""
    operating_altitude: float
    """Cruise altitude in metres."""


DEFAULT_FLEET: tuple[AgentProfile, ...] = (
    AgentProfile("A1", "Drone A1", -1.2921, 36.8219, 0.8, 65.0, 150.0),
    AgentProfile("A2", "Drone A2", -1.3032, 36.8356, 0.7, 70.0, 180.0),
    AgentProfile("B1", "Drone B1", -1.2745, 36.8098, 0.9, 60.0, 120.0),
    AgentProfile("B2", "Drone B2", -1.3167, 36.8833, 0.6, 75.0, 200.0),
)

DEFAULT_DESTINATIONS: tuple[Destination, ...] = (
    Destination("Karen Hospital", -1.2500, 36.7833),
    Destination("Machakos Hospital", -1.3500, 36.9167),
    Destination("Kiambu Medical Center", -1.1667, 36.8000),
    Destination("Athi River Clinic", -1.4000, 36.9500),
    Destination("Limuru Health Center", -1.2000, 36.7500),
)


class GeneratorSettings(BaseModel):
    """Tunable thresholds of the mission state machine."""

    tick_seconds: float = Field(default=15.0, gt=0)
    active_hours: tuple[int, int] | None = (8, 18)
    """Inclusive hour window in which idle agents may start a mission; ``None`` means always."""
    mission_start_probability: float = Field(default=0.15, ge=0, le=1)
    min_mission_battery: float = 40.0
    prepare_advance_probability: float = Field(default=0.7, ge=0, le=1)
    arrival_radius: float = Field(default=0.005, ge=0)
    """Degrees."""
    arrival_chance: float = Field(default=0.1, ge=0, le=1)
    delivery_complete_probability: float = Field(default=0.4, ge=0, le=1)
    base_radius: float = Field(default=0.002, ge=0)
    return_chance: float = Field(default=0.15, ge=0, le=1)
    idle_recharge: float = Field(default=0.5, ge=0)
    delivering_drain: float = Field(default=0.2, ge=0)
    return_drain_factor: float = Field(default=0.8, ge=0)
    battery_floor: float = Field(default=15.0, ge=0, le=100)
    km_per_degree: float = Field(default=111.0, gt=0)


@dataclass(slots=True)
class SimulatedAgent:
    """Mutable per-agent simulation state."""

    profile: AgentProfile
    battery: float
    lat: float
    lng: float
    phase: MissionPhase = MissionPhase.IDLE
    destination: Destination | None = None


def _distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Planar distance in degrees; good enough at city scale."""
    return math.hypot(lat2 - lat1, lng2 - lng1)


class SyntheticGenerator:
    """Deterministic-when-seeded fleet simulator. Never fails, never blocks."""

    def __init__(
        self,
        profiles: tuple[AgentProfile, ...] | list[AgentProfile] | None = None,
        destinations: tuple[Destination, ...] | list[Destination] | None = None,
        settings: GeneratorSettings | None = None,
        *,
        seed: int | None = None,
        start_time: datetime | None = None,
    ) -> None:
        self._settings = settings or GeneratorSettings()
        self._destinations = tuple(destinations or DEFAULT_DESTINATIONS)
        self._rng = random.Random(seed)
        self._now = start_time or datetime.now(UTC).replace(microsecond=0)
        self._agents: dict[str, SimulatedAgent] = {}
        self._latest: list[Reading] = []
        self._tick_count = 0
        for profile in profiles if profiles is not None else DEFAULT_FLEET:
            self.add_agent(profile)

    # -- Fleet -----------------------------------------------------------------

    @property
    def settings(self) -> GeneratorSettings:
        return self._settings

    @property
    def now(self) -> datetime:
        """Current simulated time."""
        return self._now

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def agent_ids(self) -> list[str]:
        return list(self._agents)

    def state_of(self, agent_id: str) -> SimulatedAgent | None:
        return self._agents.get(agent_id)

    def add_agent(self, profile: AgentProfile) -> None:
        self._agents[profile.agent_id] = SimulatedAgent(
            profile=profile,
            battery=round(85.0 + self._rng.random() * 15.0, 1),
            lat=profile.base_lat,
            lng=profile.base_lng,
        )

    def ensure_agent(self, agent_id: str, name: str | None = None) -> None:
        """Add a stand-in profile for *agent_id* if the fleet lacks one."""
        if agent_id in self._agents:
            return
        template = DEFAULT_FLEET[len(self._agents) % len(DEFAULT_FLEET)]
        self.add_agent(replace(template, agent_id=agent_id, name=name or f"Drone {agent_id}"))

    # -- Stepping --------------------------------------------------------------

    def tick(self) -> list[Reading]:
        """Advance every agent one step and return a reading for each."""
        self._now += timedelta(seconds=self._settings.tick_seconds)
        self._tick_count += 1
        self._latest = [self._step(agent) for agent in self._agents.values()]
        return list(self._latest)

    def latest(self) -> list[Reading]:
        """Return the most recent snapshot, ticking once if there is none yet."""
        if len(self._latest) != len(self._agents):
            return self.tick()
        return list(self._latest)

    def reading_for(self, agent_id: str) -> Reading | None:
        return next((r for r in self.latest() if r.agent_id == agent_id), None)

    def agents(self) -> list[Agent]:
        """Agent snapshots matching the latest readings."""
        by_id = {reading.agent_id: reading for reading in self.latest()}
        result: list[Agent] = []
        for agent_id, state in self._agents.items():
            reading = by_id.get(agent_id)
            result.append(
                Agent(
                    agent_id=agent_id,
                    name=state.profile.name,
                    status=PHASE_STATUS[state.phase],
                    last_seen=self._now,
                    position=Position(lat=state.lat, lng=state.lng),
                    metrics=reading.metrics if reading is not None else MetricSnapshot(),
                )
            )
        return result

    def backfill(self, hours: float = 6.0, step: timedelta = timedelta(minutes=3)) -> list[Reading]:
        """Generate *hours* of history ending at the current simulated time.

        Runs a separate generator over the same profiles so this
        generator's own state is not advanced.
        """
        history = SyntheticGenerator(
            [state.profile for state in self._agents.values()],
            self._destinations,
            self._settings.model_copy(update={"tick_seconds": step.total_seconds()}),
            seed=self._rng.randrange(2**32),
            start_time=self._now - timedelta(hours=hours),
        )
        readings: list[Reading] = []
        while history.now + step <= self._now:
            readings.extend(history.tick())
        return readings

    def _in_active_window(self) -> bool:
        window = self._settings.active_hours
        if window is None:
            return True
        start, end = window
        return start <= self._now.hour <= end

    def _step(self, agent: SimulatedAgent) -> Reading:
        s = self._settings
        rng = self._rng
        profile = agent.profile

        if agent.phase is MissionPhase.IDLE:
            if (
                self._in_active_window()
                and agent.battery > s.min_mission_battery
                and rng.random() < s.mission_start_probability
            ):
                agent.phase = MissionPhase.PREPARING
                agent.destination = rng.choice(self._destinations)
            else:
                agent.battery = min(100.0, agent.battery + s.idle_recharge)

        elif agent.phase is MissionPhase.PREPARING:
            if rng.random() < s.prepare_advance_probability:
                agent.phase = MissionPhase.FLYING

        elif agent.phase is MissionPhase.FLYING:
            dest = agent.destination or rng.choice(self._destinations)
            agent.destination = dest
            self._move_toward(agent, dest.lat, dest.lng)
            agent.battery -= profile.battery_decay_rate
            remaining = _distance(agent.lat, agent.lng, dest.lat, dest.lng)
            if remaining < s.arrival_radius or rng.random() < s.arrival_chance:
                agent.phase = MissionPhase.DELIVERING

        elif agent.phase is MissionPhase.DELIVERING:
            agent.battery -= s.delivering_drain
            if rng.random() < s.delivery_complete_probability:
                agent.phase = MissionPhase.RETURNING

        elif agent.phase is MissionPhase.RETURNING:
            self._move_toward(agent, profile.base_lat, profile.base_lng)
            agent.battery -= profile.battery_decay_rate * s.return_drain_factor
            remaining = _distance(agent.lat, agent.lng, profile.base_lat, profile.base_lng)
            if remaining < s.base_radius or rng.random() < s.return_chance:
                agent.phase = MissionPhase.IDLE
                agent.destination = None
                agent.lat, agent.lng = profile.base_lat, profile.base_lng

        agent.battery = max(s.battery_floor, min(100.0, agent.battery))
        return self._reading(agent)

    def _move_toward(self, agent: SimulatedAgent, lat: float, lng: float) -> None:
        """Straight-line step scaled by cruise speed and tick length."""
        step_km = agent.profile.max_speed * self._settings.tick_seconds / 3600.0
        step_deg = step_km / self._settings.km_per_degree
        total = _distance(agent.lat, agent.lng, lat, lng)
        if total > 0:
            ratio = min(step_deg / total, 1.0)
            agent.lat += (lat - agent.lat) * ratio
            agent.lng += (lng - agent.lng) * ratio

    def _reading(self, agent: SimulatedAgent) -> Reading:
        rng = self._rng
        profile = agent.profile
        speed = 0.0
        altitude = 0.0

        if agent.phase is MissionPhase.IDLE:
            temperature = 25 + rng.random() * 3
        elif agent.phase is MissionPhase.PREPARING:
            temperature = 28 + rng.random() * 3
        elif agent.phase is MissionPhase.FLYING:
            speed = profile.max_speed * (0.8 + rng.random() * 0.2)
            altitude = profile.operating_altitude + rng.random() * 30 - 15
            temperature = 35 + rng.random() * 6
        elif agent.phase is MissionPhase.DELIVERING:
            temperature = 32 + rng.random() * 4
        else:
            speed = profile.max_speed * (0.7 + rng.random() * 0.2)
            altitude = profile.operating_altitude + rng.random() * 25 - 10
            temperature = 34 + rng.random() * 5

        hour = self._now.hour
        temperature += math.sin((hour - 6) / 12 * math.pi) * 3
        humidity = 65 - abs(hour - 14) * 1.5 + rng.random() * 15

        return Reading(
            agent_id=profile.agent_id,
            timestamp=self._now,
            battery=round(agent.battery, 1),
            temperature=round(temperature, 1),
            humidity=round(humidity, 1),
            speed=round(speed, 1),
            altitude=float(round(altitude)),
            lat=round(agent.lat, 6),
            lng=round(agent.lng, 6),
            status=PHASE_STATUS[agent.phase],
        )
