"""Observer selector against a running hub over a real WebSocket."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from dronewatch.app import Application
from dronewatch.ingest.transport import InMemoryTransport
from dronewatch.models.config import AppSettings, ObserverConfig
from dronewatch.observer import DataSource, SelectorState, SourceSelector

WS_PORT = 59893


async def _until(predicate: Any, timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
async def app() -> AsyncIterator[Application]:
    settings = AppSettings(host="127.0.0.1", ws_port=WS_PORT, heartbeat_interval=60.0)
    application = Application(settings, transport=InMemoryTransport(), serve_http=False)
    async with application:
        yield application


class TestPushEndToEnd:
    async def test_three_readings_reach_observer(self, app: Application) -> None:
        assert app.hub_server is not None
        config = ObserverConfig(push_url=app.hub_server.url, enable_pull=False)
        selector = SourceSelector.from_config(config, agent_id="A1")
        async with selector:
            await _until(lambda: selector.state is SelectorState.PUSH_CONNECTED)
            await _until(lambda: app.hub.request_count >= 3)
            # Let the initial snapshot replies land before new readings arrive.
            await asyncio.sleep(0.1)

            for battery in (90.0, 85.0, 80.0):
                app.transport.publish(
                    "agents/A1/data",
                    {"battery": battery, "latitude": -1.29, "longitude": 36.82, "status": "active"},
                )

            await _until(lambda: len(selector.view.history) == 3)
            view = selector.view
            assert view.active_source is DataSource.PUSH
            assert view.current_reading is not None
            assert view.current_reading.battery == 80.0
            assert [r.battery for r in view.history] == [90.0, 85.0, 80.0]
            await _until(lambda: any(a.agent_id == "A1" for a in selector.view.agents))

    async def test_command_round_trip(self, app: Application) -> None:
        assert app.hub_server is not None
        config = ObserverConfig(push_url=app.hub_server.url, enable_pull=False)
        selector = SourceSelector.from_config(config, agent_id="A1")
        app.transport.publish("agents/A1/data", {"battery": 70.0})
        await _until(lambda: "A1" in app.registry)
        async with selector:
            await _until(lambda: selector.state is SelectorState.PUSH_CONNECTED)
            assert await selector.send_command("A1", "return_home") is True
            assert await selector.send_command("ghost", "land") is False

        published = [topic for topic, _ in app.transport.published]  # type: ignore[attr-defined]
        assert "agents/A1/commands" in published

    async def test_hub_shutdown_degrades_to_synthetic(self, app: Application) -> None:
        assert app.hub_server is not None
        config = ObserverConfig(
            push_url=app.hub_server.url,
            enable_pull=False,
            auto_reconnect=False,
            synthetic_interval=60.0,
        )
        selector = SourceSelector.from_config(config, agent_id="A1")
        async with selector:
            await _until(lambda: selector.state is SelectorState.PUSH_CONNECTED)
            await app.hub_server.stop()
            await _until(lambda: selector.state is SelectorState.SYNTHETIC_FALLBACK)
            view = selector.view
            assert view.current_reading is not None
            assert view.error is not None
