from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    log_level: str = "INFO"
    debug_mode: bool = False

    cache_enabled: bool = True
    cache_ttl_sec: int = 6 * 3600  # Snapshots older than this are rebuilt
    cache_max_entries: int = 300
    cache_minor_refresh_sec: int = 120  # Forced refreshes inside this window are ignored
    shared_store_path: str | None = None  # SQLite file shared between workers, disabled when unset

    core_feed_timeout_sec: float = 30.0
    aux_feed_timeout_sec: float = 20.0
    series_feed_timeout_sec: float = 25.0
    epg_feed_timeout_sec: float = 25.0
    series_info_timeout_sec: float = 25.0
    series_info_cache_ttl_sec: int = 3600
    series_info_cache_max_entries: int = 500

    http_max_retries: int = 3
    http_backoff_factor: float = 2.0
    http_user_agent: str = "iptv-catalog/0.1"

    refresh_cron: str = "0 */6 * * *"  # Every 6 hours
    refresh_misfire_grace_sec: int = 900

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate log level name."""
        normalized = value.upper()
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator("shared_store_path")
    @classmethod
    def validate_shared_store_path(cls, value: str | None) -> str | None:
        """Validate shared store path is accessible."""
        if value is None or not value.strip():
            return None
        path = Path(value)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access shared store path '{value}': {exc}") from exc

    @field_validator("cache_ttl_sec", "cache_max_entries", "series_info_cache_ttl_sec", "series_info_cache_max_entries")
    @classmethod
    def validate_cache_sizes(cls, value: int, info) -> int:
        """Ensure cache bounds are positive integers."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("cache_minor_refresh_sec", "refresh_misfire_grace_sec")
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure interval values are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator(
        "core_feed_timeout_sec",
        "aux_feed_timeout_sec",
        "series_feed_timeout_sec",
        "epg_feed_timeout_sec",
        "series_info_timeout_sec",
    )
    @classmethod
    def validate_timeouts(cls, value: float, info) -> float:
        """Ensure feed timeouts are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("http_max_retries")
    @classmethod
    def validate_max_retries(cls, value: int) -> int:
        """Ensure at least one HTTP attempt is made."""
        if value < 1:
            raise ValueError("http_max_retries must be >= 1")
        return value

    @field_validator("http_backoff_factor")
    @classmethod
    def validate_backoff_factor(cls, value: float) -> float:
        """Ensure the backoff factor is at least 1."""
        if value < 1:
            raise ValueError("http_backoff_factor must be >= 1")
        return value

    @field_validator("refresh_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_cache_configuration(self):
        """Validate cross-field configuration."""
        if self.cache_minor_refresh_sec >= self.cache_ttl_sec:
            raise ValueError("cache_minor_refresh_sec must be lower than cache_ttl_sec")

        if self.aux_feed_timeout_sec > self.core_feed_timeout_sec:
            logger.warning(
                "Auxiliary feed timeout (%ss) exceeds core feed timeout (%ss)",
                self.aux_feed_timeout_sec,
                self.core_feed_timeout_sec,
            )

        if self.shared_store_path and not self.cache_enabled:
            logger.warning("Shared store configured but caching is disabled - it will not be used")

        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Cache: %s", "enabled" if self.cache_enabled else "disabled")
        logger.info("  Cache TTL: %ss (max %s entries)", self.cache_ttl_sec, self.cache_max_entries)
        logger.info("  Minor Refresh Window: %ss", self.cache_minor_refresh_sec)
        logger.info("  Shared Store: %s", self.shared_store_path or "disabled")
        logger.info(
            "  Feed Timeouts: core=%.1fs aux=%.1fs series=%.1fs epg=%.1fs",
            self.core_feed_timeout_sec,
            self.aux_feed_timeout_sec,
            self.series_feed_timeout_sec,
            self.epg_feed_timeout_sec,
        )
        logger.info(
            "  HTTP Retries: %s (backoff factor %.1f)",
            self.http_max_retries,
            self.http_backoff_factor,
        )
        logger.info("  Refresh Schedule: %s", self.refresh_cron)


settings = CustomSettings()


def setup_logging(app_settings: CustomSettings | None = None) -> None:
    """Configure application logging from the given settings, or the module defaults."""
    app_settings = app_settings or settings
    level = logging.DEBUG if app_settings.debug_mode else getattr(logging, app_settings.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
