"""Tests for the pull-surface Starlette app."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from dronewatch.api.app import create_app
from dronewatch.commands import CommandRouter
from dronewatch.ingest.normalize import build_reading
from dronewatch.ingest.transport import InMemoryTransport
from dronewatch.models.agent import AgentStatus, Reading
from dronewatch.store import AgentRegistry, ReadingStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


@pytest.fixture()
def registry(clock: _Clock) -> AgentRegistry:
    return AgentRegistry(clock=clock)


@pytest.fixture()
def store() -> ReadingStore:
    return ReadingStore()


@pytest.fixture()
async def transport() -> AsyncIterator[InMemoryTransport]:
    transport = InMemoryTransport()
    await transport.start()
    yield transport
    await transport.stop()


@pytest.fixture()
async def client(
    registry: AgentRegistry, store: ReadingStore, transport: InMemoryTransport
) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(
        registry,
        store,
        CommandRouter(registry, transport),
        status_provider=lambda: {"hub": {"connectedClients": 0}},
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http:
        yield http


def _ingest(registry: AgentRegistry, store: ReadingStore, reading: Reading) -> None:
    registry.record_reading(reading)
    store.append(reading)


class TestHealth:
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["services"] == {"hub": {"connectedClients": 0}}
        assert "uptime" in body


class TestDrones:
    async def test_list_empty(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/drones")
        assert response.json() == []

    async def test_list_with_online_flag(
        self,
        client: httpx.AsyncClient,
        registry: AgentRegistry,
        store: ReadingStore,
        clock: _Clock,
    ) -> None:
        _ingest(registry, store, Reading(agent_id="A1", timestamp=NOW, battery=70.0))
        clock.now = NOW + timedelta(minutes=1)
        _ingest(registry, store, Reading(agent_id="B1", timestamp=NOW))
        clock.now = NOW + timedelta(minutes=2, seconds=30)

        agents = {a["id"]: a for a in (await client.get("/api/drones")).json()}
        assert agents["A1"]["isOnline"] is False
        assert agents["B1"]["isOnline"] is True
        assert agents["A1"]["battery"] == 70.0

    async def test_get_one(
        self, client: httpx.AsyncClient, registry: AgentRegistry, store: ReadingStore
    ) -> None:
        _ingest(registry, store, Reading(agent_id="A1", timestamp=NOW))
        response = await client.get("/api/drones/A1")
        assert response.status_code == 200
        assert response.json()["name"] == "Drone A1"

    async def test_get_unknown_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/drones/ghost")
        assert response.status_code == 404
        assert response.json() == {"error": "Drone not found"}


class TestHistory:
    async def test_history_oldest_first_within_range(
        self, client: httpx.AsyncClient, store: ReadingStore
    ) -> None:
        for minutes in (90, 50, 20, 5):
            store.append(Reading(agent_id="A1", timestamp=NOW - timedelta(minutes=minutes)))
        response = await client.get("/api/drones/A1/history")
        stamps = [item["timestamp"] for item in response.json()]
        assert len(stamps) == 3
        assert stamps == sorted(stamps)

    async def test_history_short_range(
        self, client: httpx.AsyncClient, store: ReadingStore
    ) -> None:
        for minutes in (20, 5):
            store.append(Reading(agent_id="A1", timestamp=NOW - timedelta(minutes=minutes)))
        response = await client.get("/api/drones/A1/history", params={"timeRange": "10m"})
        assert len(response.json()) == 1


class TestTelemetry:
    async def test_default_limit_is_twenty(
        self, client: httpx.AsyncClient, store: ReadingStore
    ) -> None:
        for i in range(30):
            store.append(Reading(agent_id="A1", timestamp=NOW - timedelta(seconds=i)))
        body = (await client.get("/api/telemetry")).json()
        assert body["total"] == 30
        assert len(body["logs"]) == 20

    async def test_until_and_offset(self, client: httpx.AsyncClient, store: ReadingStore) -> None:
        for i in range(10):
            store.append(Reading(agent_id="A1", timestamp=NOW - timedelta(minutes=i)))
        response = await client.get(
            "/api/telemetry",
            params={
                "until": (NOW - timedelta(minutes=2)).isoformat(),
                "limit": 3,
                "offset": 1,
            },
        )
        body = response.json()
        assert body["total"] == 8
        stamps = [log["timestamp"] for log in body["logs"]]
        expected = [NOW - timedelta(minutes=m) for m in (3, 4, 5)]
        assert [datetime.fromisoformat(s.replace("Z", "+00:00")) for s in stamps] == expected

    async def test_bad_until_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/telemetry", params={"until": "tomorrow"})
        assert response.status_code == 400

    async def test_non_finite_metrics_do_not_break_queries(
        self, client: httpx.AsyncClient, registry: AgentRegistry, store: ReadingStore
    ) -> None:
        payload = json.loads('{"battery": NaN, "speed": "inf", "status": "active"}')
        _ingest(registry, store, build_reading("A1", payload, NOW))

        drones = await client.get("/api/drones")
        telemetry = await client.get("/api/telemetry")

        assert drones.status_code == 200
        assert telemetry.status_code == 200
        log = telemetry.json()["logs"][0]
        assert log["battery"] is None
        assert log["speed"] is None
        assert log["status"] == "Active"

    async def test_filters(self, client: httpx.AsyncClient, store: ReadingStore) -> None:
        store.append(Reading(agent_id="A1", timestamp=NOW, status=AgentStatus.EMERGENCY))
        store.append(Reading(agent_id="B1", timestamp=NOW, status=AgentStatus.EMERGENCY))
        store.append(
            Reading(
                agent_id="A1",
                timestamp=NOW - timedelta(hours=2),
                status=AgentStatus.EMERGENCY,
            )
        )
        response = await client.get(
            "/api/telemetry",
            params={
                "droneId": "A1",
                "status": "emergency",
                "since": (NOW - timedelta(hours=1)).isoformat(),
            },
        )
        logs = response.json()["logs"]
        assert len(logs) == 1
        assert logs[0]["droneId"] == "A1"

    async def test_bad_since_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/telemetry", params={"since": "yesterday"})
        assert response.status_code == 400

    async def test_bad_limit_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/telemetry", params={"limit": "many"})
        assert response.status_code == 400


class TestCommand:
    async def test_command_to_online_agent(
        self,
        client: httpx.AsyncClient,
        registry: AgentRegistry,
        transport: InMemoryTransport,
    ) -> None:
        registry.record_reading(Reading(agent_id="A1", timestamp=NOW))
        response = await client.post(
            "/api/drones/A1/command", json={"command": "land", "parameters": {"speed": 2}}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Command land sent to agent A1"}
        assert transport.published[-1][0] == "agents/A1/commands"

    async def test_command_to_offline_agent_is_rejected(
        self,
        client: httpx.AsyncClient,
        registry: AgentRegistry,
        transport: InMemoryTransport,
        clock: _Clock,
    ) -> None:
        registry.record_reading(Reading(agent_id="A1", timestamp=NOW))
        clock.now = NOW + timedelta(minutes=3)
        response = await client.post("/api/drones/A1/command", json={"command": "land"})
        assert response.status_code == 409
        assert response.json() == {"error": "agent offline"}
        assert transport.published == []

    async def test_command_unknown_agent(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/drones/ghost/command", json={"command": "land"})
        assert response.status_code == 404

    async def test_command_requires_body(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/drones/A1/command", content=b"not json")
        assert response.status_code == 400
        response = await client.post("/api/drones/A1/command", json={"parameters": {}})
        assert response.status_code == 400
