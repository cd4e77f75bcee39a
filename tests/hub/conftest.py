"""Shared fixtures for fan-out hub tests."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from dronewatch.commands import CommandRouter
from dronewatch.hub import FanoutHub
from dronewatch.ingest.transport import InMemoryTransport
from dronewatch.store import AgentRegistry, ReadingStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def registry() -> AgentRegistry:
    return AgentRegistry(clock=lambda: NOW)


@pytest.fixture()
def store() -> ReadingStore:
    return ReadingStore()


@pytest.fixture()
async def transport() -> Any:
    transport = InMemoryTransport()
    await transport.start()
    yield transport
    await transport.stop()


@pytest.fixture()
def hub(registry: AgentRegistry, store: ReadingStore, transport: InMemoryTransport) -> FanoutHub:
    return FanoutHub(registry, store, CommandRouter(registry, transport))
