"""Ingestion adapter: transport messages in, registry/store writes and events out.

For each reading: upsert the agent registry, append to the reading store,
then broadcast ``telemetry_realtime`` followed by ``drone_status_update``.
Malformed messages are logged and dropped; nothing a producer sends can
stop the subscriber loop.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from dronewatch.errors import MalformedPayloadError
from dronewatch.hub import events
from dronewatch.ingest.normalize import (
    CommandAck,
    ReadingMessage,
    StatusMessage,
    parse_message,
    topic_for,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from dronewatch._internal.listeners import Subscription
    from dronewatch.ingest.transport import Transport
    from dronewatch.store.agents import AgentRegistry
    from dronewatch.store.readings import ReadingStore

logger = logging.getLogger(__name__)

INBOUND_KINDS = ("data", "status", "response")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IngestionAdapter:
    """Subscribes to per-agent topics and feeds the registry, store and hub.

    Parameters
    ----------
    transport:
        Pub/sub transport to subscribe on.
    registry / store:
        Current-state cache and reading log to write.
    publish_event:
        Coroutine receiving every fan-out event (normally
        :meth:`FanoutHub.broadcast`).
    """

    def __init__(
        self,
        transport: Transport,
        registry: AgentRegistry,
        store: ReadingStore,
        publish_event: Callable[[dict[str, Any]], Awaitable[Any]],
        *,
        topic_prefix: str = "agents",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._store = store
        self._publish_event = publish_event
        self._prefix = topic_prefix
        self._clock = clock
        self._subscriptions: list[Subscription] = []
        self._message_count = 0
        self._reading_count = 0
        self._drop_count = 0

    @property
    def message_count(self) -> int:
        return self._message_count

    @property
    def reading_count(self) -> int:
        return self._reading_count

    @property
    def drop_count(self) -> int:
        return self._drop_count

    @property
    def patterns(self) -> list[str]:
        return [topic_for(self._prefix, "+", kind) for kind in INBOUND_KINDS]

    async def start(self) -> None:
        """Subscribe to the data, status and response topics."""
        if self._subscriptions:
            return
        for pattern in self.patterns:
            self._subscriptions.append(self._transport.subscribe(pattern, self.on_message))
        logger.info("Ingestion subscribed to %s", ", ".join(self.patterns))

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

    async def on_message(self, topic: str, raw: bytes | str) -> None:
        """Process one transport message. Never raises."""
        self._message_count += 1
        try:
            message = parse_message(topic, raw, self._clock())
        except MalformedPayloadError as exc:
            self._drop_count += 1
            logger.warning("Dropping malformed message on %s: %s", topic, exc)
            return

        try:
            if isinstance(message, ReadingMessage):
                await self._handle_reading(message)
            elif isinstance(message, StatusMessage):
                await self._handle_status(message)
            elif isinstance(message, CommandAck):
                await self._handle_ack(message)
        except Exception:
            self._drop_count += 1
            logger.warning("Failed to process message on %s", topic, exc_info=True)

    async def _handle_reading(self, message: ReadingMessage) -> None:
        agent = self._registry.record_reading(message.reading)
        self._store.append(message.reading)
        self._reading_count += 1
        logger.debug(
            "Reading from %s: battery=%s status=%s",
            message.agent_id,
            message.reading.battery,
            message.reading.status,
        )
        await self._publish_event(events.telemetry_realtime(message.reading))
        await self._publish_event(events.drone_status_update(self._registry.to_wire(agent)))

    async def _handle_status(self, message: StatusMessage) -> None:
        agent = self._registry.record_status(message.agent_id, message.status, name=message.name)
        logger.debug("Status from %s: %s", message.agent_id, message.status)
        await self._publish_event(events.drone_status_update(self._registry.to_wire(agent)))

    async def _handle_ack(self, message: CommandAck) -> None:
        logger.info(
            "Command response from %s: command=%s success=%s",
            message.agent_id,
            message.command,
            message.success,
        )
        await self._publish_event(
            events.command_response(
                {
                    "success": message.success,
                    "droneId": message.agent_id,
                    "command": message.command,
                    "message": message.message or "Command acknowledged by drone",
                }
            )
        )
