"""Tests for the ingestion adapter pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from dronewatch.ingest.adapter import IngestionAdapter
from dronewatch.ingest.transport import InMemoryTransport
from dronewatch.models.agent import AgentStatus
from dronewatch.store import AgentRegistry, ReadingStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def events() -> list[dict[str, Any]]:
    return []


@pytest.fixture()
def adapter(events: list[dict[str, Any]]) -> IngestionAdapter:
    async def publish(event: dict[str, Any]) -> None:
        events.append(event)

    return IngestionAdapter(
        InMemoryTransport(),
        AgentRegistry(clock=lambda: NOW),
        ReadingStore(),
        publish,
        clock=lambda: NOW,
    )


class TestReadingPipeline:
    async def test_reading_updates_registry_store_and_broadcasts(
        self, adapter: IngestionAdapter, events: list[dict[str, Any]]
    ) -> None:
        await adapter.on_message(
            "agents/A1/data",
            b'{"battery": 77, "latitude": -1.28, "longitude": 36.82, "status": "in_flight"}',
        )

        agent = adapter._registry.get("A1")
        assert agent is not None
        assert agent.status is AgentStatus.IN_FLIGHT
        assert agent.metrics.battery == 77.0
        assert adapter._store.count("A1") == 1

        assert [e["type"] for e in events] == ["telemetry_realtime", "drone_status_update"]
        assert events[0]["data"]["droneId"] == "A1"
        assert events[0]["data"]["lat"] == -1.28
        assert events[1]["data"]["isOnline"] is True
        assert adapter.reading_count == 1

    async def test_malformed_then_good_message(
        self, adapter: IngestionAdapter, events: list[dict[str, Any]]
    ) -> None:
        await adapter.on_message("agents/A1/data", b"{not json")
        await adapter.on_message("agents/A1/data", b'{"battery": 40}')

        assert adapter._store.count("A1") == 1
        assert adapter.drop_count == 1
        assert adapter.message_count == 2
        assert [e["type"] for e in events] == ["telemetry_realtime", "drone_status_update"]

    async def test_status_message_broadcasts_status(
        self, adapter: IngestionAdapter, events: list[dict[str, Any]]
    ) -> None:
        await adapter.on_message("agents/B1/status", b'{"status": "maintenance", "name": "Bravo"}')
        agent = adapter._registry.get("B1")
        assert agent is not None
        assert agent.name == "Bravo"
        assert agent.status is AgentStatus.MAINTENANCE
        assert adapter._store.count() == 0
        assert events[0]["type"] == "drone_status_update"
        assert events[0]["data"]["name"] == "Bravo"

    async def test_response_broadcasts_command_response(
        self, adapter: IngestionAdapter, events: list[dict[str, Any]]
    ) -> None:
        await adapter.on_message("agents/A1/response", b'{"command": "land", "success": true}')
        assert events == [
            {
                "type": "command_response",
                "data": {
                    "success": True,
                    "droneId": "A1",
                    "command": "land",
                    "message": "Command acknowledged by drone",
                },
                "timestamp": events[0]["timestamp"],
            }
        ]

    async def test_broadcast_failure_is_contained(self) -> None:
        async def broken(event: dict[str, Any]) -> None:
            raise RuntimeError("hub down")

        adapter = IngestionAdapter(
            InMemoryTransport(), AgentRegistry(), ReadingStore(), broken
        )
        await adapter.on_message("agents/A1/data", b'{"battery": 1}')
        assert adapter._store.count("A1") == 1
        assert adapter.drop_count == 1


class TestSubscriptions:
    async def test_subscribes_to_inbound_kinds(self) -> None:
        transport = InMemoryTransport()
        adapter = IngestionAdapter(transport, AgentRegistry(), ReadingStore(), _noop)
        await adapter.start()
        assert sorted(transport.patterns) == [
            "agents/+/data",
            "agents/+/response",
            "agents/+/status",
        ]
        await adapter.stop()
        assert transport.patterns == []

    async def test_end_to_end_through_transport(self) -> None:
        transport = InMemoryTransport()
        store = ReadingStore()
        adapter = IngestionAdapter(transport, AgentRegistry(), store, _noop)
        await transport.start()
        await adapter.start()
        try:
            transport.publish("agents/A1/data", {"battery": 90})
            transport.publish("agents/A1/commands", {"command": "land"})
            await transport.drain()
        finally:
            await adapter.stop()
            await transport.stop()
        assert store.count() == 1
        assert adapter.message_count == 1


async def _noop(event: dict[str, Any]) -> None:
    return None
