"""History range tokens accepted by the hub and the pull surface."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

DEFAULT_TIME_RANGE = "1h"

TIME_RANGES: dict[str, timedelta] = {
    "10m": timedelta(minutes=10),
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}

_ALIASES = {"10min": "10m"}


def normalize_time_range(token: str | None) -> str:
    """Return the canonical token for *token*; unknown or missing means ``1h``."""
    if not token:
        return DEFAULT_TIME_RANGE
    token = _ALIASES.get(token, token)
    return token if token in TIME_RANGES else DEFAULT_TIME_RANGE


def resolve_since(token: str | None, now: datetime) -> datetime:
    """Translate a range token into a concrete cutoff before *now*."""
    return now - TIME_RANGES[normalize_time_range(token)]
