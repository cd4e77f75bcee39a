"""Shared fixtures for CLI execution tests."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

PULL_URL = "http://pull.test:3000"


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Point the pull-surface commands at a mocked API and keep .env out of the way."""
    env = {"DRONEWATCH_PULL_URL": PULL_URL}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()
