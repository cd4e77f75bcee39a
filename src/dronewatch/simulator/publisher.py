"""Publishes synthetic fleet readings into an ingestion transport.

Stands in for real drones during development: registers each simulated
agent with a status message, then publishes one data message per agent
on every tick, exactly as a producer on the broker would.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from dronewatch._internal.async_utils import cancel_task
from dronewatch.ingest.normalize import topic_for

if TYPE_CHECKING:
    from dronewatch.ingest.transport import Transport
    from dronewatch.models.agent import Reading
    from dronewatch.simulator.generator import SyntheticGenerator

logger = logging.getLogger(__name__)


def producer_payload(reading: Reading) -> dict[str, Any]:
    """Shape a reading the way field hardware reports it (flat latitude/longitude)."""
    return {
        "battery": reading.battery,
        "temperature": reading.temperature,
        "humidity": reading.humidity,
        "speed": reading.speed,
        "altitude": reading.altitude,
        "latitude": reading.lat,
        "longitude": reading.lng,
        "status": str(reading.status),
    }


class SimulationPublisher:
    """Timer-driven loop publishing :class:`SyntheticGenerator` ticks."""

    def __init__(
        self,
        transport: Transport,
        generator: SyntheticGenerator,
        *,
        interval: float = 5.0,
        topic_prefix: str = "agents",
    ) -> None:
        self._transport = transport
        self._generator = generator
        self._interval = interval
        self._prefix = topic_prefix
        self._task: asyncio.Task[None] | None = None
        self._published = 0

    @property
    def published_count(self) -> int:
        return self._published

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def announce(self) -> None:
        """Publish a status message for every simulated agent."""
        for agent in self._generator.agents():
            self._transport.publish(
                topic_for(self._prefix, agent.agent_id, "status"),
                {"name": agent.name, "status": str(agent.status), "isOnline": True},
            )

    def publish_tick(self) -> int:
        """Advance the generator once and publish every reading."""
        sent = 0
        for reading in self._generator.tick():
            topic = topic_for(self._prefix, reading.agent_id, "data")
            if self._transport.publish(topic, producer_payload(reading)):
                sent += 1
        self._published += sent
        return sent

    async def start(self) -> None:
        if self.is_running:
            return
        self.announce()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Simulation publishing %d agents every %.1fs",
            len(self._generator.agent_ids),
            self._interval,
        )

    async def stop(self) -> None:
        await cancel_task(self._task)
        self._task = None

    async def _run(self) -> None:
        while True:
            sent = self.publish_tick()
            logger.debug("Published %d synthetic readings", sent)
            await asyncio.sleep(self._interval)
