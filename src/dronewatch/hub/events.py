"""Fan-out channel protocol: message types and server event builders.

Every frame is a JSON object with a ``type`` and an ISO-8601
``timestamp``:

- ``connection``          {status, clientId}
- ``drones_update``       {data: [agent, ...]}
- ``telemetry_update``    {data: {logs, total, droneId}}
- ``telemetry_realtime``  {data: reading}
- ``drone_status_update`` {data: agent}
- ``drone_history``       {data: {data, droneId, timeRange}}
- ``command_response``    {data: {success, droneId, command, message}}
- ``heartbeat`` / ``pong``
- ``error``               {message}
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dronewatch.models.agent import Reading


class MessageType(StrEnum):
    CONNECTION = "connection"
    DRONES_UPDATE = "drones_update"
    TELEMETRY_UPDATE = "telemetry_update"
    TELEMETRY_REALTIME = "telemetry_realtime"
    DRONE_STATUS_UPDATE = "drone_status_update"
    DRONE_HISTORY = "drone_history"
    COMMAND_RESPONSE = "command_response"
    HEARTBEAT = "heartbeat"
    PONG = "pong"
    ERROR = "error"
    # Requests from observers
    SUBSCRIBE_DRONES = "subscribe_drones"
    SUBSCRIBE_TELEMETRY = "subscribe_telemetry"
    GET_DRONE_HISTORY = "get_drone_history"
    SEND_COMMAND = "send_command"
    PING = "ping"


def _now_iso(timestamp: datetime | None = None) -> str:
    return (timestamp or datetime.now(UTC)).isoformat()


def build(
    message_type: MessageType, timestamp: datetime | None = None, **fields: Any
) -> dict[str, Any]:
    """Build a protocol message of *message_type* carrying *fields*."""
    return {"type": str(message_type), **fields, "timestamp": _now_iso(timestamp)}


def encode(event: dict[str, Any]) -> str:
    """Serialise one event. Called once per broadcast, not once per channel."""
    return json.dumps(event, default=str)


def connection(client_id: str) -> dict[str, Any]:
    return build(MessageType.CONNECTION, status="connected", clientId=client_id)


def drones_update(agents: list[dict[str, Any]]) -> dict[str, Any]:
    return build(MessageType.DRONES_UPDATE, data=agents)


def telemetry_update(readings: list[Reading], agent_id: str | None) -> dict[str, Any]:
    logs = [reading.to_wire() for reading in readings]
    return build(
        MessageType.TELEMETRY_UPDATE,
        data={"logs": logs, "total": len(logs), "droneId": agent_id},
    )


def telemetry_realtime(reading: Reading) -> dict[str, Any]:
    return build(MessageType.TELEMETRY_REALTIME, data=reading.to_wire())


def drone_status_update(agent: dict[str, Any]) -> dict[str, Any]:
    return build(MessageType.DRONE_STATUS_UPDATE, data=agent)


def drone_history(readings: list[Reading], agent_id: str, time_range: str) -> dict[str, Any]:
    return build(
        MessageType.DRONE_HISTORY,
        data={
            "data": [reading.to_wire() for reading in readings],
            "droneId": agent_id,
            "timeRange": time_range,
        },
    )


def command_response(result: dict[str, Any]) -> dict[str, Any]:
    return build(MessageType.COMMAND_RESPONSE, data=result)


def heartbeat() -> dict[str, Any]:
    return build(MessageType.HEARTBEAT)


def pong() -> dict[str, Any]:
    return build(MessageType.PONG)


def error(message: str) -> dict[str, Any]:
    return build(MessageType.ERROR, message=message)
