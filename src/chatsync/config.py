"""
Configuration for the chatsync client core.

Each component takes its own dataclass; Settings aggregates them and can be
loaded from CHATSYNC_* environment variables (optionally from a .env file).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ValidationError
from .sync.models import ConflictStrategy

PRODUCTION_API_URL = "https://api.xiaoxiang.com/v1"
PRODUCTION_WS_URL = "wss://ws.xiaoxiang.com/ws"
DEVELOPMENT_API_URL = "http://localhost:3000/api/v1"
DEVELOPMENT_WS_URL = "ws://localhost:3000/ws"

MAX_BACKOFF_SECONDS = 30.0


@dataclass
class ApiConfig:
    """Request client settings."""

    base_url: str = PRODUCTION_API_URL
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = MAX_BACKOFF_SECONDS


@dataclass
class AuthConfig:
    """Auth session settings."""

    expiry_buffer_seconds: float = 5 * 60  # token treated as unusable this close to expiry
    renewal_lead_seconds: float = 10 * 60  # proactive refresh this long before expiry
    renewal_retry_seconds: float = 30.0  # first retry after a failed proactive refresh, doubling
    renewal_retry_max_seconds: float = 5 * 60
    token_type: str = "Bearer"


@dataclass
class RealtimeConfig:
    """Realtime transport settings."""

    url: str = PRODUCTION_WS_URL
    reconnect_interval_seconds: float = 5.0
    max_reconnect_delay_seconds: float = MAX_BACKOFF_SECONDS
    max_reconnect_attempts: int = 5
    heartbeat_interval_seconds: float = 30.0
    connection_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 10.0
    max_queue_size: int = 1000


@dataclass
class SyncConfig:
    """Sync engine settings."""

    batch_size: int = 50
    sync_interval_seconds: float = 30.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 5.0
    debounce_seconds: float = 1.0
    conflict_resolution: ConflictStrategy = ConflictStrategy.SERVER_WINS
    max_recent_errors: int = 50
    page_limit: int = 200


@dataclass
class Settings:
    """All component settings plus process-level options."""

    api: ApiConfig = field(default_factory=ApiConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    environment: str = "production"
    data_dir: Path = field(default_factory=lambda: Path("~/.chatsync").expanduser())
    log_level: str = "INFO"
    app_version: str = "1.0.0"
    platform: str = "desktop"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> Settings:
        """
        Build settings from CHATSYNC_* environment variables.

        Args:
            env_file: Optional .env file loaded first (existing variables win)
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)

        env = os.environ
        environment = env.get("CHATSYNC_ENV", "production").lower()
        is_dev = environment == "development"

        settings = cls(
            environment=environment,
            log_level=env.get("CHATSYNC_LOG_LEVEL", "DEBUG" if is_dev else "INFO").upper(),
            data_dir=Path(env.get("CHATSYNC_DATA_DIR", "~/.chatsync")).expanduser(),
            app_version=env.get("CHATSYNC_APP_VERSION", "1.0.0"),
            platform=env.get("CHATSYNC_PLATFORM", "desktop"),
        )

        settings.api.base_url = env.get("CHATSYNC_API_URL", DEVELOPMENT_API_URL if is_dev else PRODUCTION_API_URL)
        settings.api.timeout_seconds = _float(env, "CHATSYNC_API_TIMEOUT", settings.api.timeout_seconds)
        settings.api.max_retries = _int(env, "CHATSYNC_API_MAX_RETRIES", settings.api.max_retries)
        settings.api.retry_delay_seconds = _float(env, "CHATSYNC_API_RETRY_DELAY", settings.api.retry_delay_seconds)

        settings.realtime.url = env.get("CHATSYNC_WS_URL", DEVELOPMENT_WS_URL if is_dev else PRODUCTION_WS_URL)
        settings.realtime.max_reconnect_attempts = _int(
            env, "CHATSYNC_WS_MAX_RECONNECT_ATTEMPTS", settings.realtime.max_reconnect_attempts
        )
        settings.realtime.heartbeat_interval_seconds = _float(
            env, "CHATSYNC_WS_HEARTBEAT_INTERVAL", settings.realtime.heartbeat_interval_seconds
        )

        settings.sync.batch_size = _int(env, "CHATSYNC_SYNC_BATCH_SIZE", settings.sync.batch_size)
        settings.sync.sync_interval_seconds = _float(
            env, "CHATSYNC_SYNC_INTERVAL", settings.sync.sync_interval_seconds
        )
        strategy = env.get("CHATSYNC_CONFLICT_RESOLUTION")
        if strategy:
            try:
                settings.sync.conflict_resolution = ConflictStrategy(strategy.lower())
            except ValueError as e:
                raise ValidationError(f"Unknown conflict resolution strategy: {strategy}") from e

        return settings


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ValidationError(f"{key} must not be negative")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValidationError(f"{key} must be a number, got {raw!r}") from e
    if value < 0:
        raise ValidationError(f"{key} must not be negative")
    return value
