"""
Centralized configuration for the courier relay.

Configuration is loaded from environment variables with sensible defaults.
All amoCRM-specific ids (pipeline, statuses, custom field ids) live here so
the sync logic treats them as opaque filter data.

Usage:
    from relay.config import config

    domain = config.amocrm.domain
    ttl = config.cache.ttl_seconds
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class AmoCRMConfig:
    """amoCRM API configuration."""

    domain: str = field(default_factory=lambda: os.getenv("AMOCRM_DOMAIN", ""))
    token: str = field(default_factory=lambda: os.getenv("API_TOKEN", ""))
    request_timeout: float = field(default_factory=lambda: _env_float("AMOCRM_TIMEOUT", 15.0))

    # Delivery pipeline and the "handed to courier" status leads are pulled from
    pipeline_id: int = field(default_factory=lambda: _env_int("AMOCRM_PIPELINE_ID", 4963870))
    status_id: int = field(default_factory=lambda: _env_int("AMOCRM_STATUS_ID", 54415026))
    delivered_status_id: int = field(
        default_factory=lambda: _env_int("AMOCRM_DELIVERED_STATUS_ID", 142)
    )
    work_phone_field_id: int = field(
        default_factory=lambda: _env_int("AMOCRM_WORK_PHONE_FIELD_ID", 289537)
    )

    webhook_page_size: int = 10
    sweep_page_size: int = 50
    max_pages: int = 100

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}/api/v4"


@dataclass(frozen=True)
class CacheConfig:
    """Response cache and request budget."""

    ttl_seconds: float = 300.0  # 5 minutes
    max_stale_age_seconds: float = 3600.0
    budget_requests: int = field(default_factory=lambda: _env_int("AMOCRM_BUDGET_PER_MINUTE", 30))
    budget_window_seconds: float = 60.0


@dataclass(frozen=True)
class SyncConfig:
    """Webhook burst handling and reconciliation pacing."""

    burst_threshold: int = 5
    full_sync_delay_seconds: float = 5.0
    page_delay_seconds: float = 1.0
    courier_delay_seconds: float = 1.0
    reconcile_hour: int = field(default_factory=lambda: _env_int("RECONCILE_HOUR", 3))
    reconcile_minute: int = field(default_factory=lambda: _env_int("RECONCILE_MINUTE", 0))
    timezone: str = field(default_factory=lambda: os.getenv("RELAY_TIMEZONE", "Europe/Moscow"))


@dataclass(frozen=True)
class LocationConfig:
    """Live location windows (seconds)."""

    live_update_interval: float = field(
        default_factory=lambda: _env_float("LIVE_UPDATE_INTERVAL", 120.0)
    )
    map_display_extension: float = field(
        default_factory=lambda: _env_float("MAP_DISPLAY_EXTENSION", 600.0)
    )
    expiry_check_interval: float = 30.0

    @property
    def staleness_window(self) -> float:
        return self.live_update_interval + self.map_display_extension


@dataclass(frozen=True)
class StorageConfig:
    """JSON files the relay reads and writes."""

    orders_path: Path = field(
        default_factory=lambda: Path(os.getenv("ORDERS_FILE", BASE_DIR / "orders.json"))
    )
    couriers_path: Path = field(
        default_factory=lambda: Path(os.getenv("COURIERS_FILE", BASE_DIR / "couriers.json"))
    )


@dataclass(frozen=True)
class WebConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = field(default_factory=lambda: _env_int("PORT", 3001))
    login_rate_limit: str = "10/minute"


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    amocrm: AmoCRMConfig = field(default_factory=AmoCRMConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    locations: LocationConfig = field(default_factory=LocationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()

VERSION = config.version


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(cfg: AppConfig = None) -> None:
    """
    Validate that all required configuration is present.

    Call this on application startup to fail fast.

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = cfg or config
    errors = []

    if not cfg.amocrm.domain:
        errors.append("AMOCRM_DOMAIN is required but not set")
    elif "://" in cfg.amocrm.domain:
        errors.append("AMOCRM_DOMAIN must be a bare host name (e.g. example.amocrm.ru)")

    if not cfg.amocrm.token:
        errors.append("API_TOKEN is required but not set")

    if cfg.cache.budget_requests < 1:
        errors.append("AMOCRM_BUDGET_PER_MINUTE must be positive")

    if not cfg.storage.couriers_path.exists():
        errors.append(f"Courier roster not found at {cfg.storage.couriers_path}")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
