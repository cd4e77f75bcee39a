"""Fan-out hub: the live set of observer channels.

Pushes every ingested update to all open channels and answers per-channel
requests (agent snapshot, recent telemetry, history, commands, ping).
Channel cleanup is driven by failed writes: a channel whose send raises,
or that is no longer open, is dropped after the broadcast loop finishes.
Heartbeats are pushed every ``heartbeat_interval`` seconds; acknowledgments
are recorded but, unless ``liveness_timeout`` is set, a silent channel is
never closed for missing them.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Protocol

from dronewatch._internal.async_utils import cancel_task
from dronewatch.commands import CommandResult
from dronewatch.errors import AgentNotFoundError, AgentOfflineError
from dronewatch.hub import events
from dronewatch.hub.events import MessageType
from dronewatch.store.time_range import normalize_time_range, resolve_since

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from dronewatch.commands import CommandRouter
    from dronewatch.store.agents import AgentRegistry
    from dronewatch.store.readings import ReadingStore

logger = logging.getLogger(__name__)

RECENT_TELEMETRY_LIMIT = 100
HISTORY_LIMIT = 500


class Channel(Protocol):
    """One observer connection as seen by the hub."""

    @property
    def id(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...


class FanoutHub:
    """Broadcasts events to every registered channel and serves their requests."""

    def __init__(
        self,
        registry: AgentRegistry,
        store: ReadingStore,
        commands: CommandRouter | None = None,
        *,
        heartbeat_interval: float = 30.0,
        liveness_timeout: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._store = store
        self._commands = commands
        self._heartbeat_interval = heartbeat_interval
        self._liveness_timeout = liveness_timeout
        self._monotonic = monotonic
        self._channels: dict[str, Channel] = {}
        self._connected_at: dict[str, float] = {}
        self._last_ack: dict[str, float] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._broadcast_count = 0
        self._request_count = 0
        self._handlers: dict[str, Callable[[Channel, dict[str, Any]], Awaitable[None]]] = {
            MessageType.SUBSCRIBE_DRONES: self._handle_subscribe_drones,
            MessageType.SUBSCRIBE_TELEMETRY: self._handle_subscribe_telemetry,
            MessageType.GET_DRONE_HISTORY: self._handle_get_history,
            MessageType.SEND_COMMAND: self._handle_send_command,
            MessageType.PING: self._handle_ping,
            MessageType.PONG: self._handle_ack,
            MessageType.HEARTBEAT: self._handle_ack,
        }

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start the heartbeat loop."""
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info("Fan-out hub started (heartbeat every %.0fs)", self._heartbeat_interval)

    async def stop(self) -> None:
        """Stop the heartbeat loop and close every channel."""
        await cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        for channel in list(self._channels.values()):
            with contextlib.suppress(Exception):
                await channel.close()
            self.unregister(channel)
        logger.info("Fan-out hub stopped")

    # -- Channel set -----------------------------------------------------------

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    @property
    def broadcast_count(self) -> int:
        return self._broadcast_count

    @property
    def request_count(self) -> int:
        return self._request_count

    def has_channel(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def last_ack(self, channel_id: str) -> float | None:
        """Monotonic time of the last liveness acknowledgment from *channel_id*."""
        return self._last_ack.get(channel_id)

    async def register(self, channel: Channel) -> None:
        """Add *channel*, confirm the connection and send the agent snapshot."""
        now = self._monotonic()
        self._channels[channel.id] = channel
        self._connected_at[channel.id] = now
        self._last_ack[channel.id] = now
        logger.info("Observer connected: %s (total: %d)", channel.id, len(self._channels))
        if await self._send(channel, events.connection(channel.id)):
            await self._send(channel, events.drones_update(self._registry.snapshot()))

    def unregister(self, channel: Channel) -> None:
        if self._channels.pop(channel.id, None) is not None:
            logger.info(
                "Observer disconnected: %s (remaining: %d)", channel.id, len(self._channels)
            )
        self._connected_at.pop(channel.id, None)
        self._last_ack.pop(channel.id, None)

    # -- Outbound --------------------------------------------------------------

    async def broadcast(self, event: dict[str, Any]) -> int:
        """Send *event* to every open channel; return how many received it.

        The event is serialised once. Channels that are closed or whose
        write fails are collected during the loop and removed after it.
        """
        self._broadcast_count += 1
        if not self._channels:
            return 0

        text = events.encode(event)
        delivered = 0
        dead: list[Channel] = []
        for channel in list(self._channels.values()):
            if not channel.is_open:
                dead.append(channel)
                continue
            try:
                await channel.send(text)
                delivered += 1
            except Exception:
                logger.debug("Broadcast to %s failed", channel.id, exc_info=True)
                dead.append(channel)

        for channel in dead:
            self.unregister(channel)
        return delivered

    async def _send(self, channel: Channel, event: dict[str, Any]) -> bool:
        """Send *event* to one channel, dropping the channel if the write fails."""
        if not channel.is_open:
            self.unregister(channel)
            return False
        try:
            await channel.send(events.encode(event))
        except Exception:
            logger.debug("Send to %s failed", channel.id, exc_info=True)
            self.unregister(channel)
            return False
        return True

    # -- Heartbeat -------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.heartbeat_once()
            except Exception:
                logger.warning("Heartbeat round failed", exc_info=True)

    async def heartbeat_once(self) -> int:
        """Push one heartbeat to every channel; return how many received it."""
        if self._liveness_timeout is not None:
            await self._close_stale_channels(self._liveness_timeout)
        return await self.broadcast(events.heartbeat())

    async def _close_stale_channels(self, timeout: float) -> None:
        now = self._monotonic()
        for channel in list(self._channels.values()):
            last = self._last_ack.get(channel.id, now)
            if now - last > timeout:
                logger.info("Closing %s: no acknowledgment for %.0fs", channel.id, now - last)
                with contextlib.suppress(Exception):
                    await channel.close()
                self.unregister(channel)

    # -- Inbound requests ------------------------------------------------------

    async def on_request(self, channel: Channel, raw: str | bytes | dict[str, Any]) -> None:
        """Dispatch one request frame from *channel*."""
        if isinstance(raw, dict):
            msg: Any = raw
        else:
            try:
                msg = json.loads(raw)
            except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
                logger.warning("Invalid message from %s", channel.id)
                await self._send(channel, events.error("Invalid message format"))
                return

        if not isinstance(msg, dict):
            await self._send(channel, events.error("Invalid message format"))
            return

        message_type = msg.get("type")
        handler = self._handlers.get(message_type) if isinstance(message_type, str) else None
        if handler is None:
            logger.warning("Unknown message type from %s: %r", channel.id, message_type)
            return

        self._request_count += 1
        logger.debug("Request from %s: %s", channel.id, message_type)
        await handler(channel, msg)

    async def _handle_subscribe_drones(self, channel: Channel, msg: dict[str, Any]) -> None:
        await self._send(channel, events.drones_update(self._registry.snapshot()))

    async def _handle_subscribe_telemetry(self, channel: Channel, msg: dict[str, Any]) -> None:
        requested = msg.get("droneId")
        agent_id = None if requested in (None, "", "all") else str(requested)
        try:
            readings = self._store.most_recent(agent_id, RECENT_TELEMETRY_LIMIT)
        except Exception:
            logger.warning("Telemetry lookup for %s failed", requested, exc_info=True)
            await self._send(channel, events.error("Failed to fetch telemetry data"))
            return
        await self._send(channel, events.telemetry_update(readings, agent_id or "all"))

    async def _handle_get_history(self, channel: Channel, msg: dict[str, Any]) -> None:
        agent_id = msg.get("droneId")
        if not agent_id:
            await self._send(channel, events.error("droneId is required"))
            return
        time_range = normalize_time_range(msg.get("timeRange"))
        since = resolve_since(time_range, self._registry.now())
        try:
            readings = self._store.range(str(agent_id), since, limit=HISTORY_LIMIT)
        except Exception:
            logger.warning("History lookup for %s failed", agent_id, exc_info=True)
            await self._send(channel, events.error("Failed to fetch drone history"))
            return
        await self._send(channel, events.drone_history(readings, str(agent_id), time_range))

    async def _handle_send_command(self, channel: Channel, msg: dict[str, Any]) -> None:
        agent_id = str(msg.get("droneId") or "")
        command = str(msg.get("command") or "")
        parameters = msg.get("parameters")
        if not agent_id or not command:
            result = CommandResult(False, agent_id, command, "droneId and command are required")
        elif self._commands is None:
            result = CommandResult(False, agent_id, command, "Commands are not available")
        else:
            try:
                result = self._commands.send(
                    agent_id, command, parameters if isinstance(parameters, dict) else None
                )
            except AgentNotFoundError:
                result = CommandResult(False, agent_id, command, "Drone not found")
            except AgentOfflineError as exc:
                result = CommandResult(False, agent_id, command, str(exc))
        await self._send(channel, events.command_response(result.to_dict()))

    async def _handle_ping(self, channel: Channel, msg: dict[str, Any]) -> None:
        self._last_ack[channel.id] = self._monotonic()
        await self._send(channel, events.pong())

    async def _handle_ack(self, channel: Channel, msg: dict[str, Any]) -> None:
        self._last_ack[channel.id] = self._monotonic()

    # -- Introspection ---------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Summary for the health endpoint."""
        now = self._monotonic()
        return {
            "connectedClients": len(self._channels),
            "broadcasts": self._broadcast_count,
            "requests": self._request_count,
            "clients": [
                {
                    "id": channel_id,
                    "connectedFor": round(now - self._connected_at.get(channel_id, now), 1),
                }
                for channel_id in self._channels
            ],
        }
