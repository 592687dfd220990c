"""Tests for environment-driven settings."""

from xomatch.config import Settings


def test_defaults_without_environment():
    settings = Settings.from_env({})
    assert settings == Settings()
    assert settings.kv_url is None
    assert settings.turn_timeout_ms == 300000


def test_environment_overrides():
    settings = Settings.from_env(
        {
            "XOMATCH_HOST": "127.0.0.1",
            "XOMATCH_PORT": "9000",
            "REDIS_URL": "redis://cache:6379/1",
            "XOMATCH_TURN_TIMEOUT_MS": "60000",
            "XOMATCH_MAX_OPEN_MATCHES": "5",
            "XOMATCH_LOG_LEVEL": "debug",
        }
    )
    assert settings.host == "127.0.0.1"
    assert settings.port == 9000
    assert settings.kv_url == "redis://cache:6379/1"
    assert settings.turn_timeout_ms == 60000
    assert settings.max_open_matches == 5
    assert settings.log_level == "DEBUG"


def test_kv_url_takes_precedence_over_redis_url():
    settings = Settings.from_env({"KV_URL": "redis://kv:6379/0", "REDIS_URL": "redis://other:6379/0"})
    assert settings.kv_url == "redis://kv:6379/0"
