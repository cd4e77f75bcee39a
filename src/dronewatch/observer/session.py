"""Observer push channel: one WebSocket connection to the fan-out hub.

Owns the reconnect policy (exponential backoff, 1s base doubling to a 30s
cap, bounded attempts) and the client heartbeat (``ping`` every 30s). A
server ``heartbeat`` is acknowledged with ``pong``. Every other frame is
handed to the ``on_message`` listeners; the end of the connection, for
any reason other than :meth:`ObserverSession.close`, fires ``on_close``
exactly once.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import websockets.asyncio.client as ws_client

from dronewatch._internal.async_utils import cancel_task
from dronewatch._internal.listeners import Listeners
from dronewatch.errors import SessionConnectionError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

_BACKOFF_BASE = 1.0
_BACKOFF_MAX = 30.0
_BACKOFF_FACTOR = 2.0


def backoff_delay(
    attempt: int,
    *,
    base: float = _BACKOFF_BASE,
    maximum: float = _BACKOFF_MAX,
) -> float:
    """Delay before retrying after failed attempt number *attempt* (1-based)."""
    return min(base * _BACKOFF_FACTOR ** max(attempt - 1, 0), maximum)


class ObserverSession:
    """Manages the WebSocket connection from an observer to the hub."""

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        backoff_base: float = _BACKOFF_BASE,
        backoff_max: float = _BACKOFF_MAX,
    ) -> None:
        self._url = url
        self._connect_timeout = connect_timeout
        self._heartbeat_interval = heartbeat_interval
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._ws: Any = None
        self._connected = False
        self._closing = False
        self._recv_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._send_count = 0
        self._recv_count = 0
        self.on_message: Listeners[dict[str, Any]] = Listeners()
        self.on_close: Listeners[str] = Listeners()

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def send_count(self) -> int:
        return self._send_count

    @property
    def recv_count(self) -> int:
        return self._recv_count

    # -- Connection ------------------------------------------------------------

    async def connect(self) -> None:
        """Open the channel, bounded by ``connect_timeout``.

        Raises :class:`SessionConnectionError` on failure or timeout.
        """
        try:
            self._ws = await asyncio.wait_for(
                ws_client.connect(self._url), timeout=self._connect_timeout
            )
        except TimeoutError as exc:
            raise SessionConnectionError(
                f"Timed out connecting to {self._url} after {self._connect_timeout:.0f}s"
            ) from exc
        except Exception as exc:
            raise SessionConnectionError(f"Failed to connect to {self._url}: {exc}") from exc

        self._connected = True
        self._closing = False
        self._recv_task = asyncio.create_task(self._receive_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Push channel connected to %s", self._url)

    async def connect_with_backoff(
        self,
        *,
        max_attempts: int = 5,
        on_failure: Callable[[int, SessionConnectionError], Awaitable[None] | None] | None = None,
    ) -> bool:
        """Connect, retrying with exponential backoff.

        *on_failure* is told about every failed attempt. Returns ``False``
        once *max_attempts* attempts have failed.
        """
        for attempt in range(1, max_attempts + 1):
            try:
                await self.connect()
                return True
            except SessionConnectionError as exc:
                if on_failure is not None:
                    result = on_failure(attempt, exc)
                    if inspect.isawaitable(result):
                        await result
                if attempt >= max_attempts:
                    logger.warning("Giving up on %s after %d attempts", self._url, attempt)
                    return False
                wait = backoff_delay(attempt, base=self._backoff_base, maximum=self._backoff_max)
                logger.info(
                    "Connection attempt %d failed: %s; retrying in %.1fs", attempt, exc, wait
                )
                await asyncio.sleep(wait)
        return False

    async def close(self) -> None:
        """Close the channel without firing ``on_close``."""
        self._closing = True
        self._connected = False
        await cancel_task(self._heartbeat_task)
        await cancel_task(self._recv_task)
        self._heartbeat_task = None
        self._recv_task = None
        if self._ws is not None:
            with contextlib.suppress(Exception):
                await self._ws.close()
            self._ws = None

    # -- Inbound ---------------------------------------------------------------

    async def _receive_loop(self) -> None:
        assert self._ws is not None
        reason = "connection closed"
        try:
            async for raw in self._ws:
                try:
                    msg = json.loads(raw)
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Received non-JSON frame, ignoring")
                    continue
                if not isinstance(msg, dict):
                    continue
                self._recv_count += 1
                if msg.get("type") == "heartbeat":
                    await self.send({"type": "pong"})
                    continue
                await self.on_message.emit(msg)
        except Exception as exc:
            reason = f"connection lost: {exc}"
            logger.info("Receive loop ended (%s)", exc)
        finally:
            self._connected = False
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()

        if not self._closing:
            logger.info("Push channel closed: %s", reason)
            await self.on_close.emit(reason)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if not await self.send({"type": "ping"}):
                return

    # -- Outbound --------------------------------------------------------------

    async def send(self, message: dict[str, Any]) -> bool:
        """Send one frame. Never raises; returns ``False`` if it was not sent."""
        if not self._connected or self._ws is None:
            return False
        frame = {**message, "timestamp": message.get("timestamp") or datetime.now(UTC).isoformat()}
        try:
            await self._ws.send(json.dumps(frame, default=str))
        except Exception:
            logger.warning("Send failed; marking push channel as disconnected")
            self._connected = False
            return False
        self._send_count += 1
        return True

    async def subscribe_agents(self) -> bool:
        return await self.send({"type": "subscribe_drones"})

    async def subscribe_telemetry(self, agent_id: str | None) -> bool:
        return await self.send({"type": "subscribe_telemetry", "droneId": agent_id or "all"})

    async def get_history(self, agent_id: str, time_range: str = "1h") -> bool:
        return await self.send(
            {"type": "get_drone_history", "droneId": agent_id, "timeRange": time_range}
        )

    async def send_command(
        self,
        agent_id: str,
        command: str,
        parameters: dict[str, Any] | None = None,
    ) -> bool:
        return await self.send(
            {
                "type": "send_command",
                "droneId": agent_id,
                "command": command,
                "parameters": parameters or {},
            }
        )
