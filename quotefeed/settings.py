"""Centralized configuration management for the quote feed engagement service."""

from __future__ import annotations

import logging
import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables defined in a local .env file before instantiating the
# settings singleton so the API process and the reconciler worker observe the same
# configuration surface.
load_dotenv()

# -- Application-wide constants -------------------------------------------------

DEFAULT_SQLITE_DATABASE_URL = "sqlite+aiosqlite:///./data/quotes.db"
POSTGRES_ASYNC_PREFIX = "postgresql+psycopg://"
POSTGRES_SYNC_PREFIXES = ("postgres://", "postgresql://")
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_REDIS_RETRY_BACKOFF_SECONDS = 30.0
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LIKES_TOPIC = "quote-likes"
DEFAULT_SAVES_TOPIC = "quote-saves"
DEFAULT_CONSUMER_GROUP = "feed-events-consumer"


class AppSettings(BaseSettings):
    """Typed configuration surface built on top of ``pydantic-settings``.

    Both the FastAPI application and the ``quotefeed-reconciler`` worker read
    from this class, so Kafka, Redis and database options live side by side.
    Derived helpers (normalized database URL, parsed broker list) keep the
    parsing logic in one place.
    """

    _explicit_redis_url: bool = PrivateAttr(default=False)
    _explicit_kafka_brokers: bool = PrivateAttr(default=False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    def __init__(self, **values: object) -> None:
        """Capture explicit overrides prior to delegating to ``BaseSettings``."""

        normalized_keys = {str(key).lower() for key in values}
        super().__init__(**values)
        self._explicit_redis_url = "redis_url" in normalized_keys
        self._explicit_kafka_brokers = bool(
            {"kafka_brokers_raw", "kafka_brokers"} & normalized_keys
        )
        redis_env = os.getenv("REDIS_URL")
        if redis_env is not None and redis_env.strip():
            self._explicit_redis_url = True
        brokers_env = os.getenv("KAFKA_BROKERS")
        if brokers_env is not None and brokers_env.strip():
            self._explicit_kafka_brokers = True

    database_url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description=(
            "Full SQLAlchemy-compatible database URL. Postgres URLs supplied in"
            " sync format (postgres:// or postgresql://) are coerced into the"
            " async psycopg driver string at runtime."
        ),
    )
    use_sqlite: bool = Field(
        default=False,
        alias="USE_SQLITE",
        description="Force SQLite usage regardless of DATABASE_URL.",
    )
    redis_url: str = Field(default=DEFAULT_REDIS_URL, alias="REDIS_URL")
    redis_retry_backoff_seconds: float = Field(
        default=DEFAULT_REDIS_RETRY_BACKOFF_SECONDS,
        alias="REDIS_RETRY_BACKOFF_SECONDS",
        description="Cooldown applied after Redis connection failures before reconnecting.",
    )
    kafka_brokers_raw: str | None = Field(
        default=None,
        alias="KAFKA_BROKERS",
        description="Comma-separated Kafka bootstrap servers. Empty disables publishing.",
    )
    kafka_client_id: str = Field(default="quote-feed", alias="KAFKA_CLIENT_ID")
    kafka_consumer_group: str = Field(
        default=DEFAULT_CONSUMER_GROUP, alias="KAFKA_CONSUMER_GROUP"
    )
    kafka_likes_topic: str = Field(default=DEFAULT_LIKES_TOPIC, alias="KAFKA_LIKES_TOPIC")
    kafka_saves_topic: str = Field(default=DEFAULT_SAVES_TOPIC, alias="KAFKA_SAVES_TOPIC")
    event_publish_timeout_seconds: float = Field(
        default=1.5,
        alias="EVENT_PUBLISH_TIMEOUT_SECONDS",
        description="Upper bound on the best-effort publish step of the write path.",
    )
    reconciler_batch_size: int = Field(default=200, alias="RECONCILER_BATCH_SIZE")
    reconciler_poll_timeout_ms: int = Field(
        default=1000, alias="RECONCILER_POLL_TIMEOUT_MS"
    )
    reconciler_backoff_initial_seconds: float = Field(
        default=1.0, alias="RECONCILER_BACKOFF_INITIAL_SECONDS"
    )
    reconciler_backoff_max_seconds: float = Field(
        default=30.0, alias="RECONCILER_BACKOFF_MAX_SECONDS"
    )
    reconciler_startup_retries: int = Field(
        default=30,
        alias="RECONCILER_STARTUP_RETRIES",
        description="Attempts made to find the Kafka topics before the worker gives up.",
    )
    reconciler_startup_delay_seconds: float = Field(
        default=2.0, alias="RECONCILER_STARTUP_DELAY_SECONDS"
    )
    feed_default_limit: int = Field(default=20, alias="FEED_DEFAULT_LIMIT")
    cors_allow_origins_raw: str | None = Field(default=None, alias="CORS_ALLOW_ORIGINS")
    log_level: str = Field(
        default=DEFAULT_LOG_LEVEL,
        alias="LOG_LEVEL",
        description="Root logging level (e.g. INFO, DEBUG, WARNING).",
    )

    @property
    def resolved_database_url(self) -> str:
        """Return the async-compatible database URL after applying fallbacks."""

        if self.use_sqlite or not self.database_url:
            return DEFAULT_SQLITE_DATABASE_URL

        url = self.database_url.strip()

        for prefix in POSTGRES_SYNC_PREFIXES:
            if url.startswith(prefix):
                return url.replace(prefix, POSTGRES_ASYNC_PREFIX, 1)

        if url.startswith(POSTGRES_ASYNC_PREFIX) or url.startswith("sqlite+aiosqlite://"):
            return url

        raise RuntimeError(
            f"Expected a PostgreSQL connection string or SQLite fallback, received: {url}"
        )

    @property
    def database_type(self) -> str:
        """Return ``sqlite`` when using SQLite otherwise ``postgresql``."""

        if self.resolved_database_url.startswith("sqlite"):
            return "sqlite"
        return "postgresql"

    @property
    def kafka_brokers(self) -> list[str]:
        """Return the configured bootstrap servers with blanks removed."""

        if not self.kafka_brokers_raw:
            return []
        return [broker.strip() for broker in self.kafka_brokers_raw.split(",") if broker.strip()]

    @property
    def engagement_topics(self) -> list[str]:
        return [self.kafka_likes_topic, self.kafka_saves_topic]

    @property
    def cors_allow_origins(self) -> list[str]:
        """Return normalised CORS origins supplied via environment variables."""

        if not self.cors_allow_origins_raw:
            return []
        origins = [
            origin.strip().rstrip("/")
            for origin in self.cors_allow_origins_raw.split(",")
            if origin.strip()
        ]
        return [origin for origin in origins if origin]

    @property
    def log_level_numeric(self) -> int:
        """Translate ``log_level`` into the numeric constant expected by logging."""

        candidate = logging.getLevelName(self.log_level.upper())
        if isinstance(candidate, int):
            return candidate
        return logging.INFO

    def optional_config_warnings(self) -> list[str]:
        """Return human-readable warnings for unset optional configuration."""

        warnings: list[str] = []

        if not self._explicit_redis_url and self.redis_url == DEFAULT_REDIS_URL:
            warnings.append(
                "REDIS_URL is not set - counters will use the localhost default "
                "and fall back to the database when it is unreachable"
            )

        if not self._explicit_kafka_brokers and not self.kafka_brokers:
            warnings.append(
                "KAFKA_BROKERS is not set - engagement events are written to the "
                "database directly instead of being published"
            )

        return warnings


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return a cached instance of :class:`AppSettings`."""

    return AppSettings()


__all__ = [
    "AppSettings",
    "DEFAULT_CONSUMER_GROUP",
    "DEFAULT_LIKES_TOPIC",
    "DEFAULT_LOG_LEVEL",
    "DEFAULT_REDIS_RETRY_BACKOFF_SECONDS",
    "DEFAULT_REDIS_URL",
    "DEFAULT_SAVES_TOPIC",
    "DEFAULT_SQLITE_DATABASE_URL",
    "POSTGRES_ASYNC_PREFIX",
    "POSTGRES_SYNC_PREFIXES",
    "get_settings",
]
