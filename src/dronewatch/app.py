"""Server-side composition root.

:class:`Application` builds and owns every server component: registry,
reading store, transport, ingestion adapter, command router, fan-out hub,
hub WebSocket server, the HTTP pull surface and (optionally) a simulation
publisher feeding the transport. Nothing is a module-level singleton;
tests construct an ``Application`` with an :class:`InMemoryTransport` and
``serve_http=False``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from dronewatch.api.app import create_app
from dronewatch.commands import CommandRouter
from dronewatch.hub import FanoutHub, HubServer
from dronewatch.ingest.adapter import IngestionAdapter
from dronewatch.ingest.transport import InMemoryTransport, MqttTransport
from dronewatch.simulator import SimulationPublisher, SyntheticGenerator
from dronewatch.store import AgentRegistry, ReadingStore

if TYPE_CHECKING:
    from starlette.applications import Starlette

    from dronewatch.ingest.transport import Transport
    from dronewatch.models.config import AppSettings

logger = logging.getLogger(__name__)


async def _safe_uvicorn_serve(server: Any, port: int) -> None:
    """Run ``uvicorn.Server.serve()`` turning its ``SystemExit`` into ``OSError``.

    Uvicorn calls ``sys.exit(1)`` when it cannot bind the port, which
    would otherwise take down the event loop.
    """
    try:
        await server.serve()
    except SystemExit as exc:
        if exc.code == 0:
            logger.debug("Uvicorn exited cleanly on port %d", port)
            return
        raise OSError(f"HTTP server failed to start on port {port}") from exc


class _LoggingASGI:
    """Thin ASGI wrapper that logs every HTTP request and its status."""

    def __init__(self, app: Any) -> None:
        self._app = app

    async def __call__(self, scope: Any, receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        method = scope.get("method", "?")
        path = scope.get("path", "/")
        status: int | None = None

        async def _logging_send(message: Any) -> None:
            nonlocal status
            if message.get("type") == "http.response.start":
                status = message.get("status")
            await send(message)

        await self._app(scope, receive, _logging_send)
        logger.debug("HTTP %s %s -> %s", method, path, status)


def build_transport(settings: AppSettings, kind: str = "mqtt") -> Transport:
    """Create the ingestion transport named by *kind* (``mqtt`` or ``memory``)."""
    if kind == "memory":
        return InMemoryTransport()
    return MqttTransport(
        settings.broker_url,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        connect_timeout=settings.connect_timeout,
    )


class Application:
    """Owns and wires the server-side components for one process."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        transport: Transport | None = None,
        simulate: bool = False,
        simulate_interval: float = 5.0,
        seed: int | None = None,
        serve_http: bool = True,
        serve_ws: bool = True,
    ) -> None:
        self.settings = settings
        self.registry = AgentRegistry(
            offline_threshold=timedelta(seconds=settings.offline_threshold_seconds)
        )
        self.store = ReadingStore(max_per_agent=settings.max_readings_per_agent)
        self.transport: Transport = transport or build_transport(settings)
        self.commands = CommandRouter(
            self.registry, self.transport, topic_prefix=settings.topic_prefix
        )
        self.hub = FanoutHub(
            self.registry,
            self.store,
            self.commands,
            heartbeat_interval=settings.heartbeat_interval,
            liveness_timeout=settings.liveness_timeout,
        )
        self.adapter = IngestionAdapter(
            self.transport,
            self.registry,
            self.store,
            self.hub.broadcast,
            topic_prefix=settings.topic_prefix,
        )
        self.hub_server = (
            HubServer(self.hub, host=settings.host, port=settings.ws_port, path=settings.ws_path)
            if serve_ws
            else None
        )
        self.api: Starlette = create_app(
            self.registry, self.store, self.commands, status_provider=self.status
        )
        self.publisher = (
            SimulationPublisher(
                self.transport,
                SyntheticGenerator(seed=seed),
                interval=simulate_interval,
                topic_prefix=settings.topic_prefix,
            )
            if simulate
            else None
        )
        self._serve_http = serve_http
        self._uvi_server: Any = None
        self._http_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start components in dependency order: sinks before sources."""
        if self._running:
            return
        await self.transport.start()
        await self.hub.start()
        if self.hub_server is not None:
            await self.hub_server.start()
        await self.adapter.start()
        if self._serve_http:
            await self._start_http()
        if self.publisher is not None:
            await self.publisher.start()
        self._running = True
        logger.info(
            "Application started (http=%s, ws=%s, transport=%s)",
            self.settings.http_port if self._serve_http else "off",
            self.hub_server.url if self.hub_server is not None else "off",
            type(self.transport).__name__,
        )

    async def _start_http(self) -> None:
        import uvicorn

        config = uvicorn.Config(
            _LoggingASGI(self.api),
            host=self.settings.host,
            port=self.settings.http_port,
            log_level="warning",
        )
        self._uvi_server = uvicorn.Server(config)
        self._http_task = asyncio.create_task(
            _safe_uvicorn_serve(self._uvi_server, self.settings.http_port)
        )
        # Give uvicorn a moment to bind the port.
        await asyncio.sleep(0.5)
        if self._http_task.done():
            exc = self._http_task.exception()
            if exc is not None:
                raise OSError(
                    f"Failed to start HTTP server on port {self.settings.http_port}: {exc}"
                ) from exc

    async def stop(self) -> None:
        """Stop components in reverse order. Safe to call more than once."""
        if self.publisher is not None:
            await self.publisher.stop()
        if self._uvi_server is not None:
            # should_exit lets Starlette's lifespan finish without a CancelledError.
            self._uvi_server.should_exit = True
        if self._http_task is not None and not self._http_task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._http_task
        self._http_task = None
        self._uvi_server = None
        await self.adapter.stop()
        if self.hub_server is not None:
            await self.hub_server.stop()
        await self.hub.stop()
        await self.transport.stop()
        if self._running:
            logger.info("Application stopped")
        self._running = False

    async def __aenter__(self) -> Application:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def status(self) -> dict[str, Any]:
        """Per-service status reported by ``/health``."""
        return {
            "transport": {
                "type": type(self.transport).__name__,
                "connected": self.transport.is_connected,
            },
            "ingestion": {
                "messages": self.adapter.message_count,
                "readings": self.adapter.reading_count,
                "dropped": self.adapter.drop_count,
            },
            "hub": self.hub.status(),
            "store": {
                "agents": len(self.registry),
                "readings": self.store.count(),
            },
            "simulator": {
                "running": self.publisher is not None and self.publisher.is_running,
                "published": self.publisher.published_count if self.publisher is not None else 0,
            },
        }
