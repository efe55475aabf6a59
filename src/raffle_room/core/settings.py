"""Application settings and configuration.

This module defines all configuration options for the Raffle Room service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Raffle Room", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./raffle.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # The single live raffle record and the channel it is broadcast on
    raffle_id: int = Field(default=1, alias="RAFFLE_ID")
    raffle_channel_prefix: str = Field(default="raffle-room", alias="RAFFLE_CHANNEL_PREFIX")
    seed_raffle_on_startup: bool = Field(default=True, alias="SEED_RAFFLE_ON_STARTUP")

    # Realtime bus: "memory" keeps everything in-process, "redis" fans out via pub/sub
    realtime_backend: str = Field(default="memory", alias="REALTIME_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    presence_timeout_seconds: float = Field(default=30.0, alias="PRESENCE_TIMEOUT_SECONDS")
    presence_sync_interval_seconds: float = Field(
        default=5.0,
        alias="PRESENCE_SYNC_INTERVAL_SECONDS",
    )
    redis_reconnect_delay_seconds: float = Field(default=0.5, alias="REDIS_RECONNECT_DELAY_SECONDS")
    redis_reconnect_max_delay_seconds: float = Field(
        default=30.0,
        alias="REDIS_RECONNECT_MAX_DELAY_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def raffle_channel_name(self) -> str:
        """Return the realtime channel name derived from the raffle id."""
        return f"{self.raffle_channel_prefix}-{self.raffle_id}"


settings = Settings()
