"""Tests for Settings loading from config.toml, .env and the environment."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from kordlink import config
from kordlink.config import DashboardConfig, OwnerConfig, Settings, SupervisorConfig


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for var in ("SESSION__SESSION_ID", "SERVER__PORT", "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def test_defaults(workdir: Path):
    s = Settings()

    assert s.owner.name == "kord"
    assert s.server.port == 8000
    assert s.heartbeat.interval_seconds == 300.0
    assert s.supervisor.max_restarts == 0
    assert s.session_ref == ""
    assert s.session_dir == (workdir / "session").resolve()
    assert s.store_path == (workdir / "store.json").resolve()


def test_toml_values(workdir: Path):
    (workdir / "config.toml").write_text(
        """
[owner]
name = "kordbot"
numbers = "2348000000000, 2348000000001"

[server]
port = 9100

[heartbeat]
enabled = false

[plugins.activity-log]
enabled = false
"""
    )

    s = Settings()

    assert s.owner.name == "kordbot"
    assert s.owner.primary_number == "2348000000000"
    assert s.server.port == 9100
    assert s.heartbeat.enabled is False
    assert s.plugins["activity-log"].enabled is False


def test_env_overrides_toml(workdir: Path, monkeypatch):
    (workdir / "config.toml").write_text("[server]\nport = 9100\n")
    monkeypatch.setenv("SERVER__PORT", "9200")

    assert Settings().server.port == 9200


def test_session_id_from_dotenv(workdir: Path):
    (workdir / ".env").write_text("SESSION__SESSION_ID=  kord_ai-abc123  \n")

    s = Settings()

    assert s.session_ref == "kord_ai-abc123"
    assert "abc123" not in repr(s.session)


def test_unknown_key_rejected(workdir: Path):
    (workdir / "config.toml").write_text("[server]\nprot = 1\n")

    with pytest.raises(ValidationError):
        Settings()


def test_validators():
    assert DashboardConfig(base_url="https://dash.example/").base_url == "https://dash.example"
    assert OwnerConfig(numbers="").primary_number == ""
    with pytest.raises(ValidationError):
        SupervisorConfig(max_restarts=-1)


def test_get_settings_is_cached(workdir: Path):
    config.reset_settings()

    first = config.get_settings()

    assert config.get_settings() is first
