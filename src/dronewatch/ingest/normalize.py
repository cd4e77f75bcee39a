"""Normalisation of inbound transport payloads into canonical records.

Producers disagree on status spelling and on coordinate shape. Everything
here is a pure function of its inputs so the rules can be tested on their
own:

* status strings go through a case-insensitive synonym table and anything
  outside the ten canonical values becomes ``Standby``;
* coordinates come from flat ``latitude``/``longitude``, a nested
  ``location`` (or ``position``) object, or flat ``lat``/``lng``, first
  non-null wins, defaulting to ``0.0``;
* each topic kind parses into one member of :data:`InboundMessage`.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dronewatch.errors import MalformedPayloadError
from dronewatch.models.agent import AgentStatus, Position, Reading

STATUS_SYNONYMS: dict[str, AgentStatus] = {
    "powered_off": AgentStatus.POWERED_OFF,
    "powered off": AgentStatus.POWERED_OFF,
    "in_flight": AgentStatus.IN_FLIGHT,
    "in flight": AgentStatus.IN_FLIGHT,
    "pre_flight": AgentStatus.PRE_FLIGHT,
    "pre flight": AgentStatus.PRE_FLIGHT,
    "pre-flight": AgentStatus.PRE_FLIGHT,
    "returning": AgentStatus.RETURNING,
    "delivered": AgentStatus.DELIVERED,
    "landing": AgentStatus.LANDING,
    "maintenance": AgentStatus.MAINTENANCE,
    "emergency": AgentStatus.EMERGENCY,
    "active": AgentStatus.ACTIVE,
    "standby": AgentStatus.STANDBY,
}

_COORD_KEYS = (("latitude", "longitude"), ("lat", "lng"))
_NESTED_KEYS = ("location", "position")


def normalize_status(raw: Any) -> AgentStatus:
    """Map an inbound status value onto the canonical vocabulary.

    Never raises: empty, non-string and unknown values all become
    :attr:`AgentStatus.STANDBY`.
    """
    if not isinstance(raw, str) or not raw.strip():
        return AgentStatus.STANDBY
    text = raw.strip()
    mapped = STATUS_SYNONYMS.get(text.lower())
    if mapped is not None:
        return mapped
    try:
        return AgentStatus(text)
    except ValueError:
        return AgentStatus.STANDBY


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # NaN and infinity cannot be re-encoded as strict JSON.
    return number if math.isfinite(number) else None


def _coordinate_candidates(payload: dict[str, Any], index: int) -> list[Any]:
    flat_primary = payload.get(_COORD_KEYS[0][index])
    nested = [
        payload[key].get(_COORD_KEYS[0][index])
        for key in _NESTED_KEYS
        if isinstance(payload.get(key), dict)
    ]
    flat_short = payload.get(_COORD_KEYS[1][index])
    return [flat_primary, *nested, flat_short]


def resolve_position(payload: dict[str, Any]) -> Position:
    """Resolve the coordinate pair from any accepted payload shape."""
    coords: list[float] = []
    for index in (0, 1):
        value = next(
            (
                parsed
                for parsed in map(_to_float, _coordinate_candidates(payload, index))
                if parsed is not None
            ),
            0.0,
        )
        coords.append(value)
    return Position(lat=coords[0], lng=coords[1])


def parse_timestamp(value: Any, default: datetime) -> datetime:
    """Parse an ISO-8601 string (or epoch milliseconds); fall back to *default*."""
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return default
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    number = _to_float(value)
    if number is not None:
        try:
            return datetime.fromtimestamp(number / 1000, UTC)
        except (OverflowError, OSError, ValueError):
            return default
    return default


# -- Tagged union of inbound messages ------------------------------------------


@dataclass(frozen=True, slots=True)
class ReadingMessage:
    """A telemetry sample from ``{prefix}/{id}/data``."""

    agent_id: str
    reading: Reading


@dataclass(frozen=True, slots=True)
class StatusMessage:
    """A status report from ``{prefix}/{id}/status``."""

    agent_id: str
    status: AgentStatus
    name: str | None = None


@dataclass(frozen=True, slots=True)
class CommandAck:
    """A command acknowledgment from ``{prefix}/{id}/response``."""

    agent_id: str
    command: str | None
    success: bool
    message: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


InboundMessage = ReadingMessage | StatusMessage | CommandAck


def split_topic(topic: str) -> tuple[str, str]:
    """Return ``(agent_id, kind)`` from ``{prefix}/{id}/{kind}``."""
    parts = topic.split("/")
    if len(parts) < 3 or not parts[-2] or not parts[-1]:
        raise MalformedPayloadError(f"Unrecognised topic: {topic!r}", topic=topic)
    return parts[-2], parts[-1]


def decode_payload(topic: str, raw: bytes | str) -> dict[str, Any]:
    """Decode a JSON object payload or raise :class:`MalformedPayloadError`."""
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(f"Invalid JSON on {topic}: {exc}", topic=topic) from exc
    if not isinstance(data, dict):
        raise MalformedPayloadError(
            f"Expected a JSON object on {topic}, got {type(data).__name__}", topic=topic
        )
    return data


def build_reading(agent_id: str, payload: dict[str, Any], now: datetime) -> Reading:
    """Build the canonical reading for *payload* received at *now*."""
    position = resolve_position(payload)
    return Reading(
        agent_id=agent_id,
        timestamp=parse_timestamp(payload.get("timestamp"), now),
        battery=_to_float(payload.get("battery")),
        temperature=_to_float(payload.get("temperature")),
        humidity=_to_float(payload.get("humidity")),
        speed=_to_float(payload.get("speed")),
        altitude=_to_float(payload.get("altitude")),
        lat=position.lat,
        lng=position.lng,
        status=normalize_status(payload.get("status")),
    )


def parse_message(topic: str, raw: bytes | str, now: datetime) -> InboundMessage:
    """Parse one transport message into its tagged-union member."""
    agent_id, kind = split_topic(topic)
    payload = decode_payload(topic, raw)

    if kind == "data":
        return ReadingMessage(agent_id=agent_id, reading=build_reading(agent_id, payload, now))
    if kind == "status":
        name = payload.get("name")
        return StatusMessage(
            agent_id=agent_id,
            status=normalize_status(payload.get("status")),
            name=str(name) if name else None,
        )
    if kind == "response":
        success = payload.get("success", True)
        command = payload.get("command")
        message = payload.get("message")
        return CommandAck(
            agent_id=agent_id,
            command=str(command) if command is not None else None,
            success=bool(success),
            message=str(message) if message is not None else None,
            payload=payload,
        )
    raise MalformedPayloadError(f"Unsupported topic kind {kind!r} on {topic}", topic=topic)


def topic_for(prefix: str, agent_id: str, kind: str) -> str:
    """Build ``{prefix}/{agent_id}/{kind}``."""
    return f"{prefix}/{agent_id}/{kind}"
