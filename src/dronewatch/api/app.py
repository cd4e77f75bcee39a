"""Starlette app serving the pull query surface.

Routes::

    GET  /health
    GET  /api/drones
    GET  /api/drones/{drone_id}
    GET  /api/drones/{drone_id}/history?timeRange=1h
    GET  /api/telemetry?droneId=&since=&until=&limit=&offset=&status=
    POST /api/drones/{drone_id}/command   {command, parameters}
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route

from dronewatch import __version__
from dronewatch.errors import AgentNotFoundError, AgentOfflineError
from dronewatch.ingest.normalize import normalize_status, parse_timestamp
from dronewatch.store.time_range import normalize_time_range, resolve_since

if TYPE_CHECKING:
    from collections.abc import Callable

    from starlette.requests import Request

    from dronewatch.commands import CommandRouter
    from dronewatch.store.agents import AgentRegistry
    from dronewatch.store.readings import ReadingStore

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 20
MAX_QUERY_LIMIT = 1000
HISTORY_LIMIT = 1000


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app(
    registry: AgentRegistry,
    store: ReadingStore,
    commands: CommandRouter,
    *,
    status_provider: Callable[[], dict[str, Any]] | None = None,
) -> Starlette:
    """Build the pull-surface ASGI app over the given registry and store."""
    started = time.monotonic()

    async def health(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "version": __version__,
                "timestamp": datetime.now(UTC).isoformat(),
                "uptime": round(time.monotonic() - started, 1),
                "services": status_provider() if status_provider is not None else {},
            }
        )

    async def list_drones(request: Request) -> JSONResponse:
        return JSONResponse(registry.snapshot())

    async def get_drone(request: Request) -> JSONResponse:
        agent = registry.get(request.path_params["drone_id"])
        if agent is None:
            return _error("Drone not found", 404)
        return JSONResponse(registry.to_wire(agent))

    async def drone_history(request: Request) -> JSONResponse:
        drone_id = request.path_params["drone_id"]
        time_range = normalize_time_range(request.query_params.get("timeRange"))
        since = resolve_since(time_range, registry.now())
        try:
            readings = store.range(drone_id, since, limit=HISTORY_LIMIT)
        except Exception:
            logger.warning("History query for %s failed", drone_id, exc_info=True)
            return _error("Failed to fetch drone history", 500)
        # Chart consumers want oldest first.
        return JSONResponse([reading.to_wire() for reading in reversed(readings)])

    async def telemetry(request: Request) -> JSONResponse:
        params = request.query_params
        bounds: dict[str, datetime | None] = {}
        for name in ("since", "until"):
            bounds[name] = None
            if params.get(name):
                sentinel = datetime.min.replace(tzinfo=UTC)
                bounds[name] = parse_timestamp(params[name], sentinel)
                if bounds[name] is sentinel:
                    return _error(f"Invalid '{name}' timestamp", 400)
        try:
            limit = int(params.get("limit", DEFAULT_QUERY_LIMIT))
            offset = int(params.get("offset", 0))
        except ValueError:
            return _error("Invalid 'limit' or 'offset'", 400)
        limit = max(0, min(limit, MAX_QUERY_LIMIT))
        filters: dict[str, Any] = {
            "agent_id": params.get("droneId") or None,
            "status": normalize_status(params["status"]) if params.get("status") else None,
            **bounds,
        }

        try:
            readings = store.query(**filters, limit=limit, offset=max(offset, 0))
            total = store.count_matching(**filters)
        except Exception:
            logger.warning("Telemetry query failed", exc_info=True)
            return _error("Failed to fetch telemetry data", 500)
        logs = [reading.to_wire() for reading in readings]
        return JSONResponse({"logs": logs, "total": total})

    async def send_command(request: Request) -> JSONResponse:
        drone_id = request.path_params["drone_id"]
        try:
            body = await request.json()
        except ValueError:
            return _error("Invalid JSON body", 400)
        if not isinstance(body, dict) or not body.get("command"):
            return _error("'command' is required", 400)
        parameters = body.get("parameters")

        try:
            result = commands.send(
                drone_id,
                str(body["command"]),
                parameters if isinstance(parameters, dict) else None,
            )
        except AgentNotFoundError:
            return _error("Drone not found", 404)
        except AgentOfflineError as exc:
            return _error(str(exc), 409)

        status_code = 200 if result.success else 502
        return JSONResponse(
            {"success": result.success, "message": result.message}, status_code=status_code
        )

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/api/drones", list_drones, methods=["GET"]),
        Route("/api/drones/{drone_id}", get_drone, methods=["GET"]),
        Route("/api/drones/{drone_id}/history", drone_history, methods=["GET"]),
        Route("/api/drones/{drone_id}/command", send_command, methods=["POST"]),
        Route("/api/telemetry", telemetry, methods=["GET"]),
    ]
    return Starlette(routes=routes)
