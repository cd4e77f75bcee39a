"""Tests for ObserverSession against a real local WebSocket server."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest
from websockets.asyncio.server import ServerConnection, serve

from dronewatch.errors import SessionConnectionError
from dronewatch.observer import ObserverSession, backoff_delay

PORT = 59891
CLOSED_PORT = 59899


class _ScriptedServer:
    """Sends a fixed opening script, records inbound frames, optionally hangs up."""

    def __init__(self, script: list[str], *, hang_up: bool = False) -> None:
        self.script = script
        self.hang_up = hang_up
        self.received: list[dict[str, Any]] = []

    async def handler(self, websocket: ServerConnection) -> None:
        for frame in self.script:
            await websocket.send(frame)
        if self.hang_up:
            await asyncio.sleep(0.05)
            await websocket.close()
            return
        async for raw in websocket:
            self.received.append(json.loads(raw))


@pytest.fixture
async def scripted() -> AsyncIterator[_ScriptedServer]:
    server = _ScriptedServer(
        [
            json.dumps({"type": "heartbeat"}),
            "not json",
            json.dumps({"type": "drones_update", "data": []}),
        ]
    )
    async with serve(server.handler, "127.0.0.1", PORT):
        yield server


async def _until(predicate: Any, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestBackoff:
    def test_doubles_from_base(self) -> None:
        assert [backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped(self) -> None:
        assert backoff_delay(6) == 30.0
        assert backoff_delay(20) == 30.0

    def test_custom_base(self) -> None:
        assert backoff_delay(3, base=0.5, maximum=1.0) == 1.0


class TestConnect:
    async def test_connect_failure_raises(self) -> None:
        session = ObserverSession(f"ws://127.0.0.1:{CLOSED_PORT}/ws", connect_timeout=1)
        with pytest.raises(SessionConnectionError):
            await session.connect()
        assert not session.is_connected

    async def test_backoff_gives_up_after_max_attempts(self) -> None:
        session = ObserverSession(
            f"ws://127.0.0.1:{CLOSED_PORT}/ws",
            connect_timeout=1,
            backoff_base=0.01,
            backoff_max=0.02,
        )
        failures: list[int] = []

        async def on_failure(attempt: int, exc: SessionConnectionError) -> None:
            failures.append(attempt)

        assert await session.connect_with_backoff(max_attempts=3, on_failure=on_failure) is False
        assert failures == [1, 2, 3]

    async def test_send_while_disconnected(self) -> None:
        session = ObserverSession(f"ws://127.0.0.1:{CLOSED_PORT}/ws")
        assert await session.send({"type": "ping"}) is False
        assert session.send_count == 0


class TestMessaging:
    async def test_heartbeat_answered_and_messages_forwarded(
        self, scripted: _ScriptedServer
    ) -> None:
        session = ObserverSession(f"ws://127.0.0.1:{PORT}/ws")
        got: list[dict[str, Any]] = []
        session.on_message.add(got.append)

        await session.connect()
        try:
            await _until(lambda: got and scripted.received)
            assert [m["type"] for m in got] == ["drones_update"]
            assert scripted.received[0]["type"] == "pong"
            assert "timestamp" in scripted.received[0]

            assert await session.subscribe_telemetry(None)
            assert await session.get_history("A1", "6h")
            await _until(lambda: len(scripted.received) == 3)
            assert scripted.received[1]["type"] == "subscribe_telemetry"
            assert scripted.received[1]["droneId"] == "all"
            assert scripted.received[2]["timeRange"] == "6h"
        finally:
            await session.close()

    async def test_client_heartbeat(self, scripted: _ScriptedServer) -> None:
        session = ObserverSession(f"ws://127.0.0.1:{PORT}/ws", heartbeat_interval=0.05)
        await session.connect()
        try:
            await _until(lambda: any(m["type"] == "ping" for m in scripted.received))
        finally:
            await session.close()

    async def test_server_hang_up_fires_on_close_once(self) -> None:
        server = _ScriptedServer([], hang_up=True)
        reasons: list[str] = []
        async with serve(server.handler, "127.0.0.1", PORT + 1):
            session = ObserverSession(f"ws://127.0.0.1:{PORT + 1}/ws")
            session.on_close.add(reasons.append)
            await session.connect()
            await _until(lambda: reasons)
            await session.close()
        assert len(reasons) == 1
        assert not session.is_connected

    async def test_close_does_not_fire_on_close(self, scripted: _ScriptedServer) -> None:
        session = ObserverSession(f"ws://127.0.0.1:{PORT}/ws")
        reasons: list[str] = []
        session.on_close.add(reasons.append)
        await session.connect()
        await session.close()
        await asyncio.sleep(0.05)
        assert reasons == []
        assert await session.send({"type": "ping"}) is False
