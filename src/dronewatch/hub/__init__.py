"""Fan-out hub: broadcasts ingested updates to connected observers."""

from __future__ import annotations

from dronewatch.hub.hub import Channel, FanoutHub
from dronewatch.hub.server import HubServer, WebSocketChannel

__all__ = [
    "Channel",
    "FanoutHub",
    "HubServer",
    "WebSocketChannel",
]
