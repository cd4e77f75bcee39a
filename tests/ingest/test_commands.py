"""Tests for CommandRouter online gating."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from dronewatch.commands import CommandRouter
from dronewatch.errors import AgentNotFoundError, AgentOfflineError
from dronewatch.ingest.transport import InMemoryTransport
from dronewatch.models.agent import Reading
from dronewatch.store import AgentRegistry

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
async def transport() -> InMemoryTransport:
    transport = InMemoryTransport()
    await transport.start()
    return transport


class TestCommandRouter:
    async def test_sends_to_online_agent(self, transport: InMemoryTransport) -> None:
        registry = AgentRegistry(clock=lambda: NOW)
        registry.record_reading(Reading(agent_id="A1", timestamp=NOW))
        router = CommandRouter(registry, transport)

        result = router.send("A1", "return_home", {"speed": 5})

        assert result.success is True
        assert result.message == "Command return_home sent to agent A1"
        topic, payload = transport.published[-1]
        assert topic == "agents/A1/commands"
        assert payload["command"] == "return_home"
        assert payload["parameters"] == {"speed": 5}
        assert "timestamp" in payload
        assert router.sent_count == 1
        await transport.stop()

    async def test_rejects_agent_last_seen_three_minutes_ago(
        self, transport: InMemoryTransport
    ) -> None:
        clock = _Clock()
        registry = AgentRegistry(clock=clock)
        registry.record_reading(Reading(agent_id="A1", timestamp=NOW))
        clock.now = NOW + timedelta(minutes=3)
        router = CommandRouter(registry, transport)

        with pytest.raises(AgentOfflineError, match="agent offline"):
            router.send("A1", "land")

        assert transport.published == []
        assert router.rejected_count == 1
        await transport.stop()

    async def test_unknown_agent(self, transport: InMemoryTransport) -> None:
        router = CommandRouter(AgentRegistry(), transport)
        with pytest.raises(AgentNotFoundError):
            router.send("ghost", "land")
        assert transport.published == []
        await transport.stop()

    async def test_transport_refusal_reports_failure(self) -> None:
        registry = AgentRegistry(clock=lambda: NOW)
        registry.record_reading(Reading(agent_id="A1", timestamp=NOW))
        router = CommandRouter(registry, InMemoryTransport(), topic_prefix="fleet")
        result = router.send("A1", "land")
        assert result.success is False
        assert result.to_dict() == {
            "success": False,
            "droneId": "A1",
            "command": "land",
            "message": "Failed to send command",
        }
