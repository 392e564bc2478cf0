# ==============================================================================
# Application Configuration
# ==============================================================================
"""
Configuration management using pydantic-settings.

Every tunable is read from the environment (prefix ``FOOTFALL_``), with
support for a local ``.env`` file via python-dotenv. ``footfall.settings``
maps these values onto Django settings; nothing else should import this
module directly.
"""

from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="FOOTFALL_DB_")

    engine: Literal["sqlite", "postgresql"] = Field(
        default="sqlite", description="Database backend"
    )
    name: str = Field(default="footfall.sqlite3", description="Database name or sqlite path")
    user: Optional[str] = Field(default=None, description="Database username")
    password: Optional[str] = Field(default=None, description="Database password")
    host: Optional[str] = Field(default=None, description="Database host")
    port: Optional[int] = Field(default=None, description="Database port")

    @property
    def django_config(self) -> dict:
        """Build the ``DATABASES['default']`` entry."""
        if self.engine == "sqlite":
            return {
                "ENGINE": "django.db.backends.sqlite3",
                "NAME": self.name,
            }
        return {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": self.name,
            "USER": self.user or "",
            "PASSWORD": self.password or "",
            "HOST": self.host or "localhost",
            "PORT": self.port or 5432,
        }


class TrackingSettings(BaseSettings):
    """Session lifecycle, ingestion and analytics thresholds."""

    model_config = SettingsConfigDict(env_prefix="FOOTFALL_")

    # Session lifecycle
    session_timeout_minutes: int = Field(
        default=30, description="Inactivity after which a page view opens a new session"
    )
    offline_threshold_minutes: int = Field(
        default=2, description="Inactivity after which a visitor counts as offline"
    )
    presence_expiry_minutes: int = Field(
        default=30, description="Age at which presence records are flipped inactive"
    )
    active_window_default: Literal["5m", "15m", "1h", "24h"] = Field(
        default="15m", description="Default rolling window for active-user counts"
    )

    # Caching / geolocation
    cache_ttl_seconds: int = Field(default=300, description="Default process cache TTL")
    geo_cache_ttl_seconds: int = Field(default=86400, description="Geolocation cache TTL")
    geo_timeout_seconds: float = Field(default=3.0, description="Per-lookup HTTP timeout")

    # Ingestion
    batch_size: int = Field(default=50, description="Queue length that triggers a flush")
    batch_flush_seconds: int = Field(
        default=5, description="Seconds since last flush that trigger a flush"
    )
    max_batch_events: int = Field(default=1000, description="Upper bound for batch ingest")
    reaper_interval_seconds: int = Field(default=120, description="Reaper sweep interval")
    retention_days: int = Field(default=730, description="Age after which old data is purged")

    session_classifier: str = Field(
        default="visits.classifier.HeuristicSessionClassifier",
        description="Dotted path of the session classification hook",
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(env_prefix="FOOTFALL_", extra="ignore")

    secret_key: str = Field(
        default="django-insecure-footfall-dev-key", description="Django SECRET_KEY"
    )
    debug: bool = Field(default=False, description="Django DEBUG")
    allowed_hosts: list[str] = Field(default=["*"], description="Django ALLOWED_HOSTS")
    log_level: str = Field(default="INFO", description="Log level for the visits app")

    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis URL for the event queue"
    )
    broker_url: Optional[str] = Field(
        default=None, description="Celery broker URL (defaults to redis_url)"
    )
    cache_url: Optional[str] = Field(
        default=None, description="Redis URL for the shared cache (locmem when unset)"
    )
    ipapi_access_key: Optional[str] = Field(
        default=None, description="Access key enabling the api.ipapi.com lookup"
    )

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def tracking(self) -> TrackingSettings:
        return TrackingSettings()


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
