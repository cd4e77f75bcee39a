"""Async HTTP client for the pull query surface."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from pydantic import ValidationError

from dronewatch.errors import AgentNotFoundError, AgentOfflineError, QueryError
from dronewatch.models.agent import Agent, Reading

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PullClient:
    """Thin async wrapper around :class:`httpx.AsyncClient`.

    Every failure, including timeouts and connection errors, surfaces as a
    :class:`QueryError` (or one of its subclasses) so callers have a single
    exception type to degrade on.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PullClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- Core request helper ---------------------------------------------------

    async def _request(
        self, method: str, path: str, *, agent_id: str | None = None, **kwargs: Any
    ) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise QueryError(f"Request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise QueryError(f"Request to {path} failed: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            if agent_id is not None and response.status_code == 404:
                raise AgentNotFoundError(agent_id)
            if agent_id is not None and response.status_code == 409:
                raise AgentOfflineError(agent_id)
            raise QueryError(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise QueryError(f"Invalid JSON from {path}") from exc

    # -- Queries ---------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        data = await self._request("GET", "/health")
        return data if isinstance(data, dict) else {}

    async def list_agents(self) -> list[Agent]:
        data = await self._request("GET", "/api/drones")
        return _parse_many(Agent.from_wire, data)

    async def get_agent(self, agent_id: str) -> Agent:
        data = await self._request("GET", f"/api/drones/{agent_id}", agent_id=agent_id)
        return _parse_many(Agent.from_wire, [data])[0]

    async def get_history(self, agent_id: str, time_range: str = "1h") -> list[Reading]:
        """Readings for *agent_id* within *time_range*, oldest first."""
        data = await self._request(
            "GET",
            f"/api/drones/{agent_id}/history",
            agent_id=agent_id,
            params={"timeRange": time_range},
        )
        return _parse_many(Reading.from_wire, data)

    async def get_readings(
        self,
        agent_id: str | None = None,
        *,
        since: datetime | None = None,
        limit: int = 100,
        status: str | None = None,
    ) -> list[Reading]:
        """Filtered readings, newest first."""
        params: dict[str, Any] = {"limit": limit}
        if agent_id:
            params["droneId"] = agent_id
        if since is not None:
            params["since"] = since.isoformat()
        if status:
            params["status"] = status
        data = await self._request("GET", "/api/telemetry", params=params)
        logs = data.get("logs", []) if isinstance(data, dict) else data
        return _parse_many(Reading.from_wire, logs)

    async def send_command(
        self,
        agent_id: str,
        command: str,
        parameters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """POST a command. Raises :class:`AgentOfflineError` when rejected as offline."""
        return await self._request(
            "POST",
            f"/api/drones/{agent_id}/command",
            agent_id=agent_id,
            json={"command": command, "parameters": parameters or {}},
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


def _parse_many(parse: Callable[[Any], T], items: Any) -> list[T]:
    try:
        return [parse(item) for item in items]
    except (ValidationError, KeyError, TypeError, AttributeError) as exc:
        raise QueryError(f"Unexpected response shape: {exc}") from exc
