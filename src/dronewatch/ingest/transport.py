"""Publish/subscribe transports the ingestion adapter reads from.

:class:`MqttTransport` talks to a real broker through paho-mqtt.
:class:`InMemoryTransport` offers the same surface inside the process,
for tests and for ``dronewatch serve --transport memory``.

Both hand inbound messages to one pump task that awaits each handler in
turn, so messages are processed strictly in arrival order on the event
loop even though paho delivers them from its own network thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from dronewatch._internal.async_utils import cancel_task
from dronewatch._internal.listeners import Subscription
from dronewatch.errors import ConfigError, TransportError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

_RECONNECT_MIN = 1
_RECONNECT_MAX = 30


def topic_matches(pattern: str, topic: str) -> bool:
    """MQTT wildcard match (``+`` one level, ``#`` the rest)."""
    return mqtt.topic_matches_sub(pattern, topic)


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, default=str).encode("utf-8")


class Transport(Protocol):
    """The surface the ingestion side needs from a pub/sub transport."""

    @property
    def is_connected(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def subscribe(
        self, pattern: str, handler: Callable[[str, bytes], Awaitable[None]]
    ) -> Subscription: ...

    def publish(self, topic: str, payload: dict[str, Any]) -> bool: ...


class _PumpedTransport:
    """Shared subscription bookkeeping and the in-order delivery pump."""

    def __init__(self) -> None:
        self._handlers: list[tuple[str, Callable[[str, bytes], Awaitable[None]]]] = []
        self._queue: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None
        self._received = 0

    @property
    def received_count(self) -> int:
        return self._received

    @property
    def patterns(self) -> list[str]:
        return list(dict.fromkeys(pattern for pattern, _ in self._handlers))

    def subscribe(
        self, pattern: str, handler: Callable[[str, bytes], Awaitable[None]]
    ) -> Subscription:
        """Register *handler* for topics matching *pattern*."""
        entry = (pattern, handler)
        self._handlers.append(entry)
        self._on_subscribe(pattern)

        def _release() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return Subscription(_release)

    def _on_subscribe(self, pattern: str) -> None:
        """Hook for transports that must tell a broker about new patterns."""

    def _start_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _stop_pump(self) -> None:
        await cancel_task(self._pump_task)
        self._pump_task = None

    def _enqueue(self, topic: str, payload: bytes) -> None:
        self._queue.put_nowait((topic, payload))

    async def _pump(self) -> None:
        while True:
            topic, payload = await self._queue.get()
            try:
                await self.deliver(topic, payload)
            finally:
                self._queue.task_done()

    async def deliver(self, topic: str, payload: bytes | str) -> None:
        """Hand one message to every matching handler, in registration order."""
        raw = payload.encode("utf-8") if isinstance(payload, str) else payload
        self._received += 1
        for pattern, handler in list(self._handlers):
            if not topic_matches(pattern, topic):
                continue
            try:
                await handler(topic, raw)
            except Exception:
                logger.warning("Handler for %s failed on %s", pattern, topic, exc_info=True)

    async def drain(self) -> None:
        """Wait until every queued message has been delivered."""
        await self._queue.join()


class InMemoryTransport(_PumpedTransport):
    """In-process broker. Published messages loop back to local subscribers."""

    def __init__(self) -> None:
        super().__init__()
        self._connected = False
        self.published: list[tuple[str, dict[str, Any]]] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        self._connected = True
        self._start_pump()
        logger.info("In-memory transport started")

    async def stop(self) -> None:
        self._connected = False
        await self._stop_pump()
        logger.info("In-memory transport stopped")

    def publish(self, topic: str, payload: dict[str, Any]) -> bool:
        if not self._connected:
            logger.warning("Publish to %s refused: transport not started", topic)
            return False
        self.published.append((topic, payload))
        self._enqueue(topic, encode_payload(payload))
        return True


class MqttTransport(_PumpedTransport):
    """paho-mqtt client bridged onto the asyncio event loop.

    paho runs its network loop in a background thread (``loop_start``);
    callbacks only ever schedule work onto the event loop with
    ``call_soon_threadsafe``. paho reconnects on its own with a 1s..30s
    delay; every (re)connect re-subscribes all registered patterns.
    """

    def __init__(
        self,
        broker_url: str,
        *,
        client_id: str = "dronewatch-server",
        username: str | None = None,
        password: str | None = None,
        connect_timeout: float = 10.0,
        qos: int = 1,
    ) -> None:
        super().__init__()
        parsed = urlparse(broker_url)
        if parsed.scheme not in ("mqtt", "tcp", "") or not parsed.hostname:
            raise ConfigError(f"Unsupported broker URL: {broker_url!r} (expected mqtt://host:port)")
        self._host = parsed.hostname
        self._port = parsed.port or 1883
        self._connect_timeout = connect_timeout
        self._qos = qos
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected_event: asyncio.Event | None = None
        self._connected = False
        self._publish_count = 0

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        if username:
            self._client.username_pw_set(username, password)
        self._client.reconnect_delay_set(min_delay=_RECONNECT_MIN, max_delay=_RECONNECT_MAX)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def publish_count(self) -> int:
        return self._publish_count

    async def start(self) -> None:
        """Connect to the broker, bounded by ``connect_timeout``.

        Raises :class:`TransportError` when the broker does not accept the
        connection in time.
        """
        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._start_pump()
        try:
            self._client.connect_async(self._host, self._port, keepalive=60)
            self._client.loop_start()
            await asyncio.wait_for(self._connected_event.wait(), timeout=self._connect_timeout)
        except (TimeoutError, OSError) as exc:
            await self.stop()
            raise TransportError(
                f"Failed to connect to MQTT broker at {self._host}:{self._port}: "
                f"{exc or 'timed out'}"
            ) from exc
        logger.info("Connected to MQTT broker at %s:%d", self._host, self._port)

    async def stop(self) -> None:
        self._connected = False
        with contextlib.suppress(Exception):
            self._client.disconnect()
        self._client.loop_stop()
        await self._stop_pump()
        logger.info("MQTT transport stopped")

    def publish(self, topic: str, payload: dict[str, Any]) -> bool:
        if not self._connected:
            logger.warning("Publish to %s refused: broker not connected", topic)
            return False
        info = self._client.publish(topic, encode_payload(payload), qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Publish to %s failed: %s", topic, mqtt.error_string(info.rc))
            return False
        self._publish_count += 1
        return True

    def _on_subscribe(self, pattern: str) -> None:
        if self._connected:
            self._client.subscribe(pattern, qos=self._qos)

    # -- paho callbacks (network thread) -----------------------------------

    def _call_in_loop(self, callback: Callable[..., Any], *args: Any) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def _on_connect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT broker refused connection: %s", reason_code)
            return
        for pattern in self.patterns:
            client.subscribe(pattern, qos=self._qos)
        self._call_in_loop(self._mark_connected, True)

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        logger.warning("Disconnected from MQTT broker: %s", reason_code)
        self._call_in_loop(self._mark_connected, False)

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        self._call_in_loop(self._enqueue, message.topic, bytes(message.payload))

    def _mark_connected(self, connected: bool) -> None:
        self._connected = connected
        if connected and self._connected_event is not None:
            self._connected_event.set()
