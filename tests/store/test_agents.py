"""Tests for AgentRegistry upserts and online derivation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from dronewatch.models.agent import AgentStatus, Position, Reading
from dronewatch.store.agents import AgentRegistry

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw: float) -> None:
        self.now += timedelta(**kw)


def _reading(agent_id: str = "A1", **kw: object) -> Reading:
    return Reading(agent_id=agent_id, timestamp=START, **kw)


class TestRecordReading:
    def test_creates_agent_with_default_name(self) -> None:
        registry = AgentRegistry(clock=_Clock())
        agent = registry.record_reading(_reading(battery=90.0, lat=1.0, lng=2.0))
        assert agent.name == "Drone A1"
        assert agent.last_seen == START
        assert agent.position == Position(lat=1.0, lng=2.0)
        assert agent.metrics.battery == 90.0
        assert "A1" in registry
        assert len(registry) == 1

    def test_last_seen_uses_receipt_time_not_reading_timestamp(self) -> None:
        clock = _Clock()
        registry = AgentRegistry(clock=clock)
        clock.advance(minutes=10)
        agent = registry.record_reading(_reading())
        assert agent.last_seen == START + timedelta(minutes=10)

    def test_merges_metrics(self) -> None:
        registry = AgentRegistry(clock=_Clock())
        registry.record_reading(_reading(battery=90.0, temperature=20.0))
        agent = registry.record_reading(_reading(battery=85.0, status=AgentStatus.IN_FLIGHT))
        assert agent.metrics.battery == 85.0
        assert agent.metrics.temperature == 20.0
        assert agent.status is AgentStatus.IN_FLIGHT

    def test_snapshots_are_replaced_not_mutated(self) -> None:
        registry = AgentRegistry(clock=_Clock())
        first = registry.record_reading(_reading(battery=90.0))
        registry.record_reading(_reading(battery=50.0))
        assert first.metrics.battery == 90.0
        assert registry.get("A1").metrics.battery == 50.0  # type: ignore[union-attr]


class TestRecordStatus:
    def test_creates_agent_with_given_name(self) -> None:
        registry = AgentRegistry(clock=_Clock())
        agent = registry.record_status("B1", AgentStatus.ACTIVE, name="Bravo")
        assert agent.name == "Bravo"
        assert agent.status is AgentStatus.ACTIVE

    def test_keeps_name_when_missing(self) -> None:
        registry = AgentRegistry(clock=_Clock())
        registry.record_status("B1", AgentStatus.ACTIVE, name="Bravo")
        agent = registry.record_status("B1", AgentStatus.LANDING)
        assert agent.name == "Bravo"
        assert agent.status is AgentStatus.LANDING


class TestOnlineDerivation:
    def test_goes_offline_after_threshold_without_writes(self) -> None:
        clock = _Clock()
        registry = AgentRegistry(clock=clock)
        registry.record_reading(_reading())
        assert registry.is_online("A1") is True
        clock.advance(seconds=119)
        assert registry.is_online("A1") is True
        clock.advance(seconds=1)
        assert registry.is_online("A1") is False

    def test_comes_back_online_on_new_reading(self) -> None:
        clock = _Clock()
        registry = AgentRegistry(clock=clock)
        registry.record_reading(_reading())
        clock.advance(minutes=5)
        registry.record_reading(_reading())
        assert registry.is_online("A1") is True

    def test_unknown_agent_is_offline(self) -> None:
        assert AgentRegistry(clock=_Clock()).is_online("nope") is False

    def test_snapshot_derives_flag_at_read_time(self) -> None:
        clock = _Clock()
        registry = AgentRegistry(clock=clock, offline_threshold=timedelta(seconds=30))
        registry.record_reading(_reading("A1"))
        clock.advance(seconds=40)
        registry.record_reading(_reading("B1"))
        snapshot = {item["id"]: item["isOnline"] for item in registry.snapshot()}
        assert snapshot == {"A1": False, "B1": True}

    def test_list_all_sorted_by_id(self) -> None:
        registry = AgentRegistry(clock=_Clock())
        for agent_id in ("B2", "A1", "B1"):
            registry.record_reading(_reading(agent_id))
        assert [a.agent_id for a in registry.list_all()] == ["A1", "B1", "B2"]
