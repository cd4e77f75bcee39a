"""Exception hierarchy shared by the server and observer sides."""

from __future__ import annotations


class DronewatchError(Exception):
    """Base class for every error raised by dronewatch."""


class ConfigError(DronewatchError):
    """Configuration is invalid or incomplete."""


class TransportError(DronewatchError):
    """The ingestion transport could not connect or publish."""


class MalformedPayloadError(DronewatchError):
    """An inbound transport message could not be parsed."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        super().__init__(message)
        self.topic = topic


class QueryError(DronewatchError):
    """A pull query or storage lookup failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AgentNotFoundError(QueryError):
    """No agent with the requested id has ever reported."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Drone not found: {agent_id}", status_code=404)
        self.agent_id = agent_id


class AgentOfflineError(QueryError):
    """A command was addressed to an agent whose online flag is false."""

    def __init__(self, agent_id: str) -> None:
        super().__init__("agent offline", status_code=409)
        self.agent_id = agent_id


class SessionConnectionError(DronewatchError):
    """The observer push channel failed to connect or timed out."""
