from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dronewatch.errors import ConfigError

DEFAULT_OBSERVER_CONFIG = "~/.config/dronewatch/observer.json"


class AppSettings(BaseSettings):
    """Server-side settings populated from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DRONEWATCH_",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    http_port: int = 3000
    ws_port: int = 3001
    ws_path: str = "/ws"
    broker_url: str = "mqtt://localhost:1883"
    mqtt_client_id: str = "dronewatch-server"
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    topic_prefix: str = "agents"
    heartbeat_interval: float = 30.0
    liveness_timeout: float | None = None
    offline_threshold_seconds: float = 120.0
    max_readings_per_agent: int = 10_000
    connect_timeout: float = 10.0


class ObserverConfig(BaseModel):
    """Configuration for one observing client and its fallback cascade.

    Loaded from ``~/.config/dronewatch/observer.json``, CLI flags, or
    defaults.
    """

    push_url: str = "ws://localhost:3001/ws"
    pull_url: str = "http://localhost:3000"
    enable_push: bool = True
    enable_pull: bool = True
    auto_reconnect: bool = True
    poll_interval: float = Field(default=15.0, gt=0)
    synthetic_interval: float = Field(default=15.0, gt=0)
    request_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    heartbeat_interval: float = Field(default=30.0, gt=0)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_max: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=1)
    history_limit: int = Field(default=100, ge=1)
    command_timeout: float = Field(default=5.0, gt=0)
    time_range: str = "1h"
    seed: int | None = None

    @classmethod
    def load(cls, path: Path | str | None = None) -> ObserverConfig:
        """Load configuration from a JSON file.

        Falls back to defaults if the file does not exist.
        """
        resolved = Path(DEFAULT_OBSERVER_CONFIG).expanduser() if path is None else Path(path)

        if not resolved.exists():
            return cls()

        try:
            raw = json.loads(resolved.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid observer config {resolved}: {exc}") from exc
        return cls.model_validate(raw)

    def merge_overrides(self, **overrides: Any) -> ObserverConfig:
        """Return a new config with every non-``None`` override applied."""
        data: dict[str, Any] = self.model_dump()
        data.update({key: value for key, value in overrides.items() if value is not None})
        return ObserverConfig.model_validate(data)
