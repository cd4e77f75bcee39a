"""Tests for the ingestion transports."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from dronewatch.errors import ConfigError
from dronewatch.ingest.transport import InMemoryTransport, MqttTransport, topic_matches


class TestTopicMatches:
    @pytest.mark.parametrize(
        ("pattern", "topic", "expected"),
        [
            ("agents/+/data", "agents/A1/data", True),
            ("agents/+/data", "agents/A1/status", False),
            ("agents/#", "agents/A1/response", True),
            ("agents/+/data", "agents/A1/x/data", False),
        ],
    )
    def test_wildcards(self, pattern: str, topic: str, expected: bool) -> None:
        assert topic_matches(pattern, topic) is expected


class TestInMemoryTransport:
    async def test_publish_loops_back_to_subscribers(self) -> None:
        transport = InMemoryTransport()
        received: list[tuple[str, dict[str, object]]] = []

        async def handler(topic: str, raw: bytes) -> None:
            received.append((topic, json.loads(raw)))

        transport.subscribe("agents/+/data", handler)
        await transport.start()
        try:
            assert transport.publish("agents/A1/data", {"battery": 50})
            assert transport.publish("agents/A1/status", {"status": "active"})
            await transport.drain()
        finally:
            await transport.stop()

        assert received == [("agents/A1/data", {"battery": 50})]
        assert transport.received_count == 2

    async def test_delivers_in_publish_order(self) -> None:
        transport = InMemoryTransport()
        seen: list[int] = []

        async def handler(topic: str, raw: bytes) -> None:
            await asyncio.sleep(0)
            seen.append(json.loads(raw)["n"])

        transport.subscribe("agents/#", handler)
        await transport.start()
        try:
            for n in range(20):
                transport.publish("agents/A1/data", {"n": n})
            await transport.drain()
        finally:
            await transport.stop()
        assert seen == list(range(20))

    async def test_publish_before_start_refused(self) -> None:
        transport = InMemoryTransport()
        assert transport.publish("agents/A1/commands", {"command": "land"}) is False
        assert transport.published == []

    async def test_failing_handler_does_not_block_others(self) -> None:
        transport = InMemoryTransport()
        seen: list[str] = []

        async def bad(topic: str, raw: bytes) -> None:
            raise RuntimeError("boom")

        async def good(topic: str, raw: bytes) -> None:
            seen.append(topic)

        transport.subscribe("agents/#", bad)
        transport.subscribe("agents/#", good)
        await transport.deliver("agents/A1/data", b"{}")
        assert seen == ["agents/A1/data"]

    async def test_cancelled_subscription_stops_delivery(self) -> None:
        transport = InMemoryTransport()
        seen: list[str] = []

        async def handler(topic: str, raw: bytes) -> None:
            seen.append(topic)

        sub = transport.subscribe("agents/#", handler)
        sub.cancel()
        await transport.deliver("agents/A1/data", b"{}")
        assert seen == []
        assert transport.patterns == []


class TestMqttTransport:
    def test_rejects_unsupported_url(self) -> None:
        with pytest.raises(ConfigError, match="Unsupported broker URL"):
            MqttTransport("http://broker:1883")

    def test_parses_host_and_default_port(self) -> None:
        transport = MqttTransport("mqtt://broker.local")
        assert transport._host == "broker.local"
        assert transport._port == 1883

    def test_publish_refused_when_disconnected(self) -> None:
        transport = MqttTransport("mqtt://localhost:1883")
        assert transport.publish("agents/A1/commands", {"command": "land"}) is False

    async def test_network_thread_messages_reach_handlers(self) -> None:
        transport = MqttTransport("mqtt://localhost:1883")
        seen: list[tuple[str, bytes]] = []

        async def handler(topic: str, raw: bytes) -> None:
            seen.append((topic, raw))

        transport.subscribe("agents/+/data", handler)
        transport._loop = asyncio.get_running_loop()
        transport._start_pump()
        try:
            message = SimpleNamespace(topic="agents/A1/data", payload=b'{"battery": 1}')
            transport._on_message(transport._client, None, message)  # type: ignore[arg-type]
            await asyncio.sleep(0)
            await transport.drain()
        finally:
            await transport._stop_pump()
        assert seen == [("agents/A1/data", b'{"battery": 1}')]

    async def test_connect_callback_marks_connected_and_resubscribes(self) -> None:
        transport = MqttTransport("mqtt://localhost:1883")

        async def handler(topic: str, raw: bytes) -> None:
            return None

        transport.subscribe("agents/+/data", handler)
        transport._loop = asyncio.get_running_loop()
        transport._connected_event = asyncio.Event()
        subscribed: list[str] = []
        client = SimpleNamespace(subscribe=lambda pattern, qos: subscribed.append(pattern))
        reason = SimpleNamespace(is_failure=False)

        transport._on_connect(client, None, None, reason, None)  # type: ignore[arg-type]
        await asyncio.sleep(0)

        assert subscribed == ["agents/+/data"]
        assert transport.is_connected is True
        assert transport._connected_event.is_set()
