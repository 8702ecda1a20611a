"""
Tests for settings loading and the derived component settings.
"""

from mcp_orchestrator.config import Settings


def test_database_url_built_from_postgres_settings(monkeypatch):
    monkeypatch.delenv("SQLALCHEMY_DATABASE_URL", raising=False)

    settings = Settings(
        _env_file=None,
        POSTGRES_USER="u", POSTGRES_PASSWORD="p", POSTGRES_HOST="db", POSTGRES_PORT=5433, POSTGRES_DB="tools",
    )

    assert settings.SQLALCHEMY_DATABASE_URL == "postgresql+asyncpg://u:p@db:5433/tools"


def test_explicit_database_url_wins():
    settings = Settings(_env_file=None, SQLALCHEMY_DATABASE_URL="sqlite+aiosqlite:///:memory:")

    assert settings.SQLALCHEMY_DATABASE_URL == "sqlite+aiosqlite:///:memory:"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("HANDSHAKE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("RECONNECT_ENABLED", "false")

    settings = Settings(_env_file=None)

    assert settings.connection_settings().handshake_timeout_seconds == 2.5
    assert settings.reconnect_policy().enabled is False


def test_component_settings(test_settings):
    connection = test_settings.connection_settings()
    rules = test_settings.health_rules()
    policy = test_settings.reconnect_policy()

    assert connection.probe_timeout_seconds == 0.5
    assert connection.process_startup_delay_seconds == 0.0
    assert rules.error_rate_threshold == 0.20
    assert rules.min_window_requests == 1
    assert policy.max_attempts == 1
    assert policy.delay_seconds == 0.01
