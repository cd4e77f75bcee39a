from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel


def _serialize(obj: Any) -> Any:
    """Convert *obj* to a JSON-friendly structure.

    * Domain models with ``to_wire()`` (agents, readings) use their wire form.
    * Other :class:`pydantic.BaseModel` instances are dumped with aliases.
    * Objects with a ``to_dict()`` method (views, command results) use it.
    * Lists and tuples are recursed element-wise.
    * Everything else is returned as-is (``json.dumps`` handles the rest via
      *default=str*).
    """
    if hasattr(obj, "to_wire"):
        return obj.to_wire()
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True, exclude_none=True)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, (list, tuple)):
        return [_serialize(item) for item in obj]
    return obj


def _envelope(*, ok: bool, command: str, **body: Any) -> dict[str, Any]:
    return {"ok": ok, "command": command, **body, "timestamp": datetime.now(UTC).isoformat()}


def format_json_response(*, data: Any, command: str) -> str:
    """Return a JSON envelope for a successful response.

    The envelope has the shape::

        {
          "ok": true,
          "command": "<command>",
          "data": <serialised payload>,
          "timestamp": "<ISO-8601 UTC>"
        }
    """
    envelope = _envelope(ok=True, command=command, data=_serialize(data))
    return json.dumps(envelope, indent=2, default=str)


def format_json_line(*, data: Any, command: str) -> str:
    """Single-line envelope, one per update, for streaming commands."""
    return json.dumps(_envelope(ok=True, command=command, data=_serialize(data)), default=str)


def format_json_error(
    *,
    code: str,
    message: str,
    command: str,
    **extra: Any,
) -> str:
    """Return a JSON envelope for an error response.

    The envelope has the shape::

        {
          "ok": false,
          "command": "<command>",
          "error": {"code": "...", "message": "...", ...extra},
          "timestamp": "<ISO-8601 UTC>"
        }
    """
    error_body: dict[str, Any] = {"code": code, "message": message, **extra}
    return json.dumps(_envelope(ok=False, command=command, error=error_body), indent=2, default=str)
