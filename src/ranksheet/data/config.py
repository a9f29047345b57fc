"""
RankSheet Configuration Module
==============================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    DATABASE_HOST: PostgreSQL host (default: localhost)
    DATABASE_PORT: PostgreSQL port (default: 5432)
    DATABASE_NAME: Database name (default: ranksheet)
    DATABASE_USER: Database user (default: ranksheet_app)
    DATABASE_PASSWORD: Database password (required)
    DATABASE_POOL_MIN: Minimum pool connections (default: 2)
    DATABASE_POOL_MAX: Maximum pool connections (default: 20)

    SIGNALS_API_URL: Ranking signals provider base URL
    SIGNALS_API_KEY: Ranking signals provider API key
    CATALOG_API_URL: Product catalog provider base URL
    CATALOG_API_KEY: Product catalog provider API key

    REFRESH_LOCK_ACQUIRE_TIMEOUT: Seconds to wait for a keyword lock (default: 30)
    REFRESH_DEFAULT_CONCURRENCY: Batch refresh parallelism (default: 3)

    ASIN_CACHE_TTL_DAYS: Positive cache TTL (default: 30)
    ASIN_CACHE_NEGATIVE_TTL_DAYS: NOT_FOUND cache TTL (default: 7)

    JOB_STALE_HOURS: Age after which RUNNING jobs are failed (default: 12)
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    # Try project root
    project_root = Path(__file__).parent.parent.parent.parent / ".env"
    if project_root.exists():
        load_dotenv(project_root)


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Args:
        key: Environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        Environment variable value or default

    Raises:
        ValueError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = field(default_factory=lambda: get_env("DATABASE_HOST", "localhost"))
    port: int = field(default_factory=lambda: get_env_int("DATABASE_PORT", 5432))
    name: str = field(default_factory=lambda: get_env("DATABASE_NAME", "ranksheet"))
    user: str = field(default_factory=lambda: get_env("DATABASE_USER", "ranksheet_app"))
    password: str = field(default_factory=lambda: get_env("DATABASE_PASSWORD", required=True))

    # Each batch worker holds a lock connection plus a working connection
    pool_min_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MIN", 2))
    pool_max_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MAX", 20))

    connect_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_CONNECT_TIMEOUT", 10))

    # SSL mode: disable, allow, prefer, require, verify-ca, verify-full
    ssl_mode: str = field(default_factory=lambda: get_env("DATABASE_SSL_MODE", "prefer"))

    @property
    def connection_dict(self) -> dict:
        """Connection parameters as dictionary for psycopg2."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connect_timeout,
        }

    def __post_init__(self):
        """Validate configuration."""
        if not self.password:
            raise ValueError("DATABASE_PASSWORD is required")
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size cannot exceed pool_max_size")


@dataclass
class UpstreamConfig:
    """Signals and catalog provider configuration."""

    signals_url: str = field(default_factory=lambda: get_env("SIGNALS_API_URL", "http://localhost:8000"))
    signals_api_key: Optional[str] = field(default_factory=lambda: get_env("SIGNALS_API_KEY"))
    signals_timeout: float = field(default_factory=lambda: get_env_float("SIGNALS_TIMEOUT", 15.0))

    catalog_url: str = field(default_factory=lambda: get_env("CATALOG_API_URL", "http://localhost:3000/api"))
    catalog_api_key: Optional[str] = field(default_factory=lambda: get_env("CATALOG_API_KEY"))
    catalog_timeout: float = field(default_factory=lambda: get_env_float("CATALOG_TIMEOUT", 10.0))

    # Retry configuration
    max_retries: int = field(default_factory=lambda: get_env_int("UPSTREAM_MAX_RETRIES", 3))
    retry_initial_delay: float = field(default_factory=lambda: get_env_float("UPSTREAM_RETRY_INITIAL_DELAY", 0.1))
    retry_max_delay: float = field(default_factory=lambda: get_env_float("UPSTREAM_RETRY_MAX_DELAY", 10.0))

    # Weekly report dates change rarely
    report_dates_cache_ttl: int = field(default_factory=lambda: get_env_int("REPORT_DATES_CACHE_TTL", 21600))

    def __post_init__(self):
        """Validate configuration."""
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.signals_timeout <= 0 or self.catalog_timeout <= 0:
            raise ValueError("upstream timeouts must be positive")


@dataclass
class RefreshConfig:
    """Keyword refresh configuration."""

    lock_acquire_timeout: float = field(default_factory=lambda: get_env_float("REFRESH_LOCK_ACQUIRE_TIMEOUT", 30.0))
    lock_statement_timeout: float = field(default_factory=lambda: get_env_float("REFRESH_LOCK_STATEMENT_TIMEOUT", 300.0))

    readiness_top_k: int = field(default_factory=lambda: get_env_int("REFRESH_READINESS_TOP_K", 10))
    warmup_max_asins: int = field(default_factory=lambda: get_env_int("REFRESH_WARMUP_MAX_ASINS", 20))
    warmup_delay: float = field(default_factory=lambda: get_env_float("REFRESH_WARMUP_DELAY", 0.75))

    default_concurrency: int = field(default_factory=lambda: get_env_int("REFRESH_DEFAULT_CONCURRENCY", 3))
    default_limit: int = field(default_factory=lambda: get_env_int("REFRESH_DEFAULT_LIMIT", 500))

    def __post_init__(self):
        """Validate configuration."""
        if self.lock_acquire_timeout <= 0:
            raise ValueError("lock_acquire_timeout must be positive")
        if self.readiness_top_k <= 0:
            raise ValueError("readiness_top_k must be positive")


@dataclass
class CacheConfig:
    """ASIN metadata cache configuration."""

    ttl_days: int = field(default_factory=lambda: get_env_int("ASIN_CACHE_TTL_DAYS", 30))
    negative_ttl_days: int = field(default_factory=lambda: get_env_int("ASIN_CACHE_NEGATIVE_TTL_DAYS", 7))
    cleanup_grace_days: int = field(default_factory=lambda: get_env_int("ASIN_CACHE_CLEANUP_GRACE_DAYS", 60))

    def __post_init__(self):
        """Validate configuration."""
        if self.ttl_days <= 0 or self.negative_ttl_days <= 0:
            raise ValueError("cache TTLs must be positive")


@dataclass
class QueueConfig:
    """Job queue and worker configuration."""

    refresh_one_window_minutes: int = field(default_factory=lambda: get_env_int("JOB_REFRESH_ONE_WINDOW_MINUTES", 30))
    refresh_all_window_hours: int = field(default_factory=lambda: get_env_int("JOB_REFRESH_ALL_WINDOW_HOURS", 6))
    stale_hours: int = field(default_factory=lambda: get_env_int("JOB_STALE_HOURS", 12))

    idle_sleep: float = field(default_factory=lambda: get_env_float("JOB_IDLE_SLEEP", 1.0))
    busy_sleep: float = field(default_factory=lambda: get_env_float("JOB_BUSY_SLEEP", 0.1))
    kick_interval: float = field(default_factory=lambda: get_env_float("JOB_KICK_INTERVAL", 10.0))


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))

    # Structured logging
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))

    # Rotation of LOG_FILE
    max_bytes: int = field(default_factory=lambda: get_env_int("LOG_MAX_BYTES", 10 * 1024 * 1024))
    backup_count: int = field(default_factory=lambda: get_env_int("LOG_BACKUP_COUNT", 5))


@dataclass
class Settings:
    """Main application settings container."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_settings() -> Settings:
    """
    Load and validate all application settings.

    Returns:
        Fully configured Settings instance

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    return Settings()


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    Returns:
        Global Settings instance
    """
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global _settings
    _settings = None
