"""
Tests for settings loading.
"""

import os

import pytest

ENV_KEYS = [
    "CHATSYNC_ENV",
    "CHATSYNC_LOG_LEVEL",
    "CHATSYNC_DATA_DIR",
    "CHATSYNC_API_URL",
    "CHATSYNC_API_TIMEOUT",
    "CHATSYNC_API_MAX_RETRIES",
    "CHATSYNC_API_RETRY_DELAY",
    "CHATSYNC_WS_URL",
    "CHATSYNC_WS_MAX_RECONNECT_ATTEMPTS",
    "CHATSYNC_WS_HEARTBEAT_INTERVAL",
    "CHATSYNC_SYNC_BATCH_SIZE",
    "CHATSYNC_SYNC_INTERVAL",
    "CHATSYNC_CONFLICT_RESOLUTION",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestDefaults:
    """Tests for built-in defaults."""

    def test_component_defaults(self):
        """Test the documented defaults."""
        from chatsync.config import ApiConfig, AuthConfig, RealtimeConfig, SyncConfig
        from chatsync.sync.models import ConflictStrategy

        api = ApiConfig()
        assert api.timeout_seconds == 30
        assert api.max_retries == 3
        assert api.retry_delay_seconds == 1

        auth = AuthConfig()
        assert auth.expiry_buffer_seconds == 300
        assert auth.renewal_lead_seconds == 600

        realtime = RealtimeConfig()
        assert realtime.reconnect_interval_seconds == 5
        assert realtime.max_reconnect_attempts == 5
        assert realtime.heartbeat_interval_seconds == 30

        sync = SyncConfig()
        assert sync.batch_size == 50
        assert sync.sync_interval_seconds == 30
        assert sync.retry_attempts == 3
        assert sync.retry_delay_seconds == 5
        assert sync.conflict_resolution == ConflictStrategy.SERVER_WINS


class TestFromEnv:
    """Tests for Settings.from_env."""

    def test_production_defaults(self, clean_env):
        from chatsync.config import PRODUCTION_API_URL, PRODUCTION_WS_URL, Settings

        settings = Settings.from_env()
        assert settings.environment == "production"
        assert settings.api.base_url == PRODUCTION_API_URL
        assert settings.realtime.url == PRODUCTION_WS_URL
        assert settings.log_level == "INFO"

    def test_development(self, clean_env):
        """Test development mode switches endpoints and log level."""
        from chatsync.config import DEVELOPMENT_API_URL, DEVELOPMENT_WS_URL, Settings

        clean_env.setenv("CHATSYNC_ENV", "development")
        settings = Settings.from_env()

        assert settings.is_development
        assert settings.api.base_url == DEVELOPMENT_API_URL
        assert settings.realtime.url == DEVELOPMENT_WS_URL
        assert settings.log_level == "DEBUG"

    def test_overrides(self, clean_env, temp_dir):
        """Test explicit variables override defaults."""
        from chatsync.config import Settings
        from chatsync.sync.models import ConflictStrategy

        clean_env.setenv("CHATSYNC_API_URL", "http://api.local")
        clean_env.setenv("CHATSYNC_API_MAX_RETRIES", "1")
        clean_env.setenv("CHATSYNC_SYNC_BATCH_SIZE", "10")
        clean_env.setenv("CHATSYNC_WS_HEARTBEAT_INTERVAL", "12.5")
        clean_env.setenv("CHATSYNC_CONFLICT_RESOLUTION", "MERGE")
        clean_env.setenv("CHATSYNC_DATA_DIR", str(temp_dir))

        settings = Settings.from_env()

        assert settings.api.base_url == "http://api.local"
        assert settings.api.max_retries == 1
        assert settings.sync.batch_size == 10
        assert settings.realtime.heartbeat_interval_seconds == 12.5
        assert settings.sync.conflict_resolution == ConflictStrategy.MERGE
        assert settings.data_dir == temp_dir

    def test_invalid_number(self, clean_env):
        from chatsync.config import Settings
        from chatsync.errors import ValidationError

        clean_env.setenv("CHATSYNC_SYNC_BATCH_SIZE", "many")
        with pytest.raises(ValidationError, match="CHATSYNC_SYNC_BATCH_SIZE"):
            Settings.from_env()

    def test_negative_number(self, clean_env):
        from chatsync.config import Settings
        from chatsync.errors import ValidationError

        clean_env.setenv("CHATSYNC_API_TIMEOUT", "-1")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_unknown_strategy(self, clean_env):
        from chatsync.config import Settings
        from chatsync.errors import ValidationError

        clean_env.setenv("CHATSYNC_CONFLICT_RESOLUTION", "coin_flip")
        with pytest.raises(ValidationError, match="coin_flip"):
            Settings.from_env()

    def test_env_file(self, clean_env, temp_dir):
        """Test a .env file is loaded without overriding the process environment."""
        from chatsync.config import Settings

        env_file = temp_dir / ".env"
        env_file.write_text("CHATSYNC_SYNC_BATCH_SIZE=7\nCHATSYNC_API_MAX_RETRIES=9\n")
        clean_env.setenv("CHATSYNC_API_MAX_RETRIES", "2")

        try:
            settings = Settings.from_env(env_file)
        finally:
            os.environ.pop("CHATSYNC_SYNC_BATCH_SIZE", None)

        assert settings.sync.batch_size == 7
        assert settings.api.max_retries == 2
