"""Current-state cache of every agent that has ever reported.

Written by the ingestion adapter, read by the hub and the pull surface.
Last write wins; agents are never removed and simply age into offline.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from dronewatch.models.agent import OFFLINE_THRESHOLD, Agent, AgentStatus, MetricSnapshot

if TYPE_CHECKING:
    from collections.abc import Callable

    from dronewatch.models.agent import Reading

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def default_name(agent_id: str) -> str:
    return f"Drone {agent_id}"


class AgentRegistry:
    """Single-event-loop registry of agent snapshots keyed by agent id."""

    def __init__(
        self,
        *,
        offline_threshold: timedelta = OFFLINE_THRESHOLD,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._agents: dict[str, Agent] = {}
        self._offline_threshold = offline_threshold
        self._clock = clock

    @property
    def offline_threshold(self) -> timedelta:
        return self._offline_threshold

    def now(self) -> datetime:
        return self._clock()

    def get(self, agent_id: str) -> Agent | None:
        """Return the latest snapshot for *agent_id*, or ``None``."""
        return self._agents.get(agent_id)

    def list_all(self) -> list[Agent]:
        """Return every agent ordered by id."""
        return [self._agents[key] for key in sorted(self._agents)]

    def is_online(self, agent_id: str) -> bool:
        """Derive the online flag for *agent_id* at the current clock time."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        return agent.is_online(self._clock(), self._offline_threshold)

    def record_reading(self, reading: Reading) -> Agent:
        """Upsert from a reading: refresh last-seen, merge metrics and position."""
        now = self._clock()
        current = self._agents.get(reading.agent_id)
        if current is None:
            agent = Agent(
                agent_id=reading.agent_id,
                name=default_name(reading.agent_id),
                status=reading.status,
                last_seen=now,
                position=reading.position,
                metrics=MetricSnapshot().merged(reading.metrics),
            )
            logger.info("New agent registered: %s", reading.agent_id)
        else:
            agent = current.model_copy(
                update={
                    "status": reading.status,
                    "last_seen": now,
                    "position": reading.position,
                    "metrics": current.metrics.merged(reading.metrics),
                }
            )
        self._agents[reading.agent_id] = agent
        return agent

    def record_status(
        self,
        agent_id: str,
        status: AgentStatus,
        *,
        name: str | None = None,
    ) -> Agent:
        """Upsert from a status message."""
        now = self._clock()
        current = self._agents.get(agent_id)
        if current is None:
            agent = Agent(
                agent_id=agent_id,
                name=name or default_name(agent_id),
                status=status,
                last_seen=now,
            )
            logger.info("New agent registered from status: %s", agent_id)
        else:
            update: dict[str, Any] = {"status": status, "last_seen": now}
            if name:
                update["name"] = name
            agent = current.model_copy(update=update)
        self._agents[agent_id] = agent
        return agent

    def snapshot(self) -> list[dict[str, Any]]:
        """Return every agent in wire form with the online flag derived now."""
        now = self._clock()
        return [agent.to_wire(now, self._offline_threshold) for agent in self.list_all()]

    def to_wire(self, agent: Agent) -> dict[str, Any]:
        return agent.to_wire(self._clock(), self._offline_threshold)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents
