from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_orchestrator.models.mcp import ConnectionSettings, HealthRules, ReconnectPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"], env_file_encoding="utf-8", extra="ignore"
    )

    SERVICE_NAME: str = "mcp-orchestrator"
    HOST: str = "0.0.0.0"
    PORT: int = 8010

    # PostgreSQL Database Configuration
    POSTGRES_DB: str = "mcp_orchestrator"
    POSTGRES_USER: str = "orchestrator"
    POSTGRES_PASSWORD: str = "orchestrator_dev_password"
    POSTGRES_PORT: int = 5432
    POSTGRES_HOST: str = "localhost"

    # SQLAlchemy connection string (+asyncpg); constructed from the PostgreSQL variables unless set
    SQLALCHEMY_DATABASE_URL: Optional[str] = None
    CREATE_TABLES: bool = False
    SQL_DEBUG: bool = False

    # Event relay (Redis pub/sub for the operations dashboard)
    REDIS_URL: str = "redis://localhost:6379"
    EVENT_RELAY_ENABLED: bool = False
    EVENT_CHANNEL: str = "mcp_orchestrator_events"
    EVENT_QUEUE_SIZE: int = 1000

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True  # Set to False for human-readable console output during development
    LOG_FILE_ENABLED: bool = False
    LOG_FILE_PATH: Optional[str] = None  # defaults to ./logs/{service_name}.log
    LOG_FILE_MAX_SIZE_MB: int = 10
    LOG_FILE_BACKUP_COUNT: int = 5

    # Connection lifecycle (seconds)
    HANDSHAKE_TIMEOUT_SECONDS: float = 10.0
    DISCOVERY_TIMEOUT_SECONDS: float = 10.0
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    PROCESS_STARTUP_DELAY_SECONDS: float = 0.5
    DISCONNECT_GRACE_SECONDS: float = 5.0
    MAX_SERVERS: int = 50
    AUTO_CONNECT_ON_STARTUP: bool = True

    # Health monitoring
    HEALTH_CHECK_INTERVAL_SECONDS: float = 60.0
    HEALTH_PROBE_TIMEOUT_SECONDS: float = 5.0
    HEALTH_WINDOW_SECONDS: float = 300.0
    HEALTH_WINDOW_MIN_REQUESTS: int = 1
    HEALTH_ERROR_RATE_THRESHOLD: float = 0.20
    HEALTH_LATENCY_THRESHOLD_MS: float = 5000.0
    HEALTH_PROBE_OVERDUE_SECONDS: float = 180.0
    HEALTH_STUCK_AFTER_SECONDS: float = 60.0
    HEALTH_SYSTEMIC_MIN_SERVERS: int = 2
    METRICS_WINDOW_SIZE: int = 500

    # Resource content cache
    RESOURCE_CACHE_ENABLED: bool = True
    RESOURCE_CACHE_TTL_SECONDS: float = 600.0
    RESOURCE_CACHE_MAX_SIZE_MB: float = 50.0

    # Reconnect policy (single bounded fixed-delay retry by default)
    RECONNECT_ENABLED: bool = True
    RECONNECT_MAX_ATTEMPTS: int = 1
    RECONNECT_DELAY_SECONDS: float = 5.0

    @model_validator(mode="after")
    def compute_urls(self):
        """Compute SQLALCHEMY_DATABASE_URL if not explicitly provided"""
        if not self.SQLALCHEMY_DATABASE_URL:
            self.SQLALCHEMY_DATABASE_URL = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        return self

    def connection_settings(self) -> ConnectionSettings:
        return ConnectionSettings(
            handshake_timeout_seconds=self.HANDSHAKE_TIMEOUT_SECONDS,
            discovery_timeout_seconds=self.DISCOVERY_TIMEOUT_SECONDS,
            request_timeout_seconds=self.REQUEST_TIMEOUT_SECONDS,
            process_startup_delay_seconds=self.PROCESS_STARTUP_DELAY_SECONDS,
            disconnect_grace_seconds=self.DISCONNECT_GRACE_SECONDS,
            probe_timeout_seconds=self.HEALTH_PROBE_TIMEOUT_SECONDS,
        )

    def health_rules(self) -> HealthRules:
        return HealthRules(
            window_seconds=self.HEALTH_WINDOW_SECONDS,
            min_window_requests=self.HEALTH_WINDOW_MIN_REQUESTS,
            error_rate_threshold=self.HEALTH_ERROR_RATE_THRESHOLD,
            latency_threshold_ms=self.HEALTH_LATENCY_THRESHOLD_MS,
            probe_overdue_seconds=self.HEALTH_PROBE_OVERDUE_SECONDS,
            stuck_after_seconds=self.HEALTH_STUCK_AFTER_SECONDS,
            systemic_min_servers=self.HEALTH_SYSTEMIC_MIN_SERVERS,
        )

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            enabled=self.RECONNECT_ENABLED,
            max_attempts=self.RECONNECT_MAX_ATTEMPTS,
            delay_seconds=self.RECONNECT_DELAY_SECONDS,
        )


settings = Settings()
