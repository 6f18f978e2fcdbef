"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (session id, dashboard API
key) live in .env. Environment variables override both using ``__`` as the
nested delimiter (e.g. ``SESSION__SESSION_ID``). Secrets use SecretStr for
masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from kordlink.config import get_settings

    s = get_settings()
    print(s.owner.name)
    print(s.session_dir)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class OwnerConfig(_StrictModel):
    name: str = "kord"  # reported as botId to the dashboard
    numbers: str = ""  # comma-separated; first entry is used for pairing

    @property
    def primary_number(self) -> str:
        return self.numbers.split(",")[0].strip()


class SessionConfig(_StrictModel):
    session_id: SecretStr | None = None
    remote_prefix: str = "kord_ai-"
    directory: str = "session"
    store_file: str = "store.json"


class BotConfig(_StrictModel):
    always_online: bool = False
    version: str = "1.0.0"


class DashboardConfig(_StrictModel):
    base_url: str = "https://kordai-dash.vercel.app"
    api_key: SecretStr = SecretStr("kordAi.key")
    timeout_seconds: float = 5.0

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class HeartbeatConfig(_StrictModel):
    enabled: bool = True
    interval_seconds: float = 300.0  # 5 minutes
    retry_delay_seconds: float = 5.0
    initial_attempts: int = 3
    max_failures: int = 3

    @field_validator("initial_attempts", "max_failures")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)


class SupervisorConfig(_StrictModel):
    reconnect_delay_seconds: float = 5.0
    max_restarts: int = 0  # consecutive restarts without reaching "open"; 0 = unbounded
    store_flush_interval_seconds: float = 30.0
    retry_cache_size: int = 1000
    key_cache_ttl_seconds: float = 300.0
    shutdown_step_timeout_seconds: float = 5.0
    shutdown_watchdog_seconds: float = 15.0

    @field_validator("max_restarts")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_restarts must be >= 0")
        return v


class StoreConfig(_StrictModel):
    max_messages_per_chat: int = 1000


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class PluginConfig(_StrictModel):
    enabled: bool = True


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    owner: OwnerConfig = OwnerConfig()
    session: SessionConfig = SessionConfig()
    bot: BotConfig = BotConfig()
    dashboard: DashboardConfig = DashboardConfig()
    heartbeat: HeartbeatConfig = HeartbeatConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    store: StoreConfig = StoreConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    plugins: dict[str, PluginConfig] = {}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def session_dir(self) -> Path:
        return (self.project_root / self.session.directory).resolve()

    @cached_property
    def store_path(self) -> Path:
        return (self.project_root / self.session.store_file).resolve()

    @property
    def session_ref(self) -> str:
        if self.session.session_id is None:
            return ""
        return self.session.session_id.get_secret_value().strip()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
