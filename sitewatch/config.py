"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import AnomalyType, Severity


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Bounds for per-site settings.
MIN_CHECK_INTERVAL = 10
MAX_CHECK_INTERVAL = 86400
MAX_SSL_WARNING_DAYS = 365
MAX_ESCALATION_MINUTES = 1440


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the scheduler loop and the prober."""

    tick_seconds: int = 10  # seconds between scans for due sites
    max_workers: int = 10  # concurrent site pipelines per tick
    probe_timeout: float = 10.0  # total budget for one probe, redirects included

    def __post_init__(self) -> None:
        if self.tick_seconds < 1:
            raise ConfigError(f"Monitor tick_seconds must be at least 1 (got {self.tick_seconds})")
        if self.max_workers < 1:
            raise ConfigError(f"Monitor max_workers must be at least 1 (got {self.max_workers})")
        if self.probe_timeout <= 0:
            raise ConfigError(f"Monitor probe_timeout must be positive (got {self.probe_timeout})")


@dataclass(frozen=True)
class SiteSettingsConfig:
    """Per-site overrides declared in the configuration file.

    Notification toggles left unset (None) mean "enabled".
    """

    response_time_threshold: int | None = None
    ssl_expiry_warning_days: int = 7
    check_interval: int = 60
    custom_name: str | None = None
    notify: dict[str, bool] = field(default_factory=dict)
    severity_threshold: str = "low"
    escalation_threshold_minutes: int = 5

    def __post_init__(self) -> None:
        if self.response_time_threshold is not None and self.response_time_threshold < 1:
            raise ConfigError("response_time_threshold must be a positive number of milliseconds")
        if not (1 <= self.ssl_expiry_warning_days <= MAX_SSL_WARNING_DAYS):
            raise ConfigError(f"ssl_expiry_warning_days must be between 1 and {MAX_SSL_WARNING_DAYS}")
        if not (MIN_CHECK_INTERVAL <= self.check_interval <= MAX_CHECK_INTERVAL):
            raise ConfigError(f"check_interval must be between {MIN_CHECK_INTERVAL} and {MAX_CHECK_INTERVAL} seconds")
        if self.custom_name is not None and len(self.custom_name) > 255:
            raise ConfigError("custom_name cannot exceed 255 characters")
        if self.severity_threshold not in {s.value for s in Severity}:
            raise ConfigError(f"Invalid severity_threshold '{self.severity_threshold}'")
        if not (1 <= self.escalation_threshold_minutes <= MAX_ESCALATION_MINUTES):
            raise ConfigError(f"escalation_threshold_minutes must be between 1 and {MAX_ESCALATION_MINUTES}")
        unknown = set(self.notify) - {t.value for t in AnomalyType}
        if unknown:
            raise ConfigError(f"Unknown notify keys: {sorted(unknown)}")
        not_bool = sorted(key for key, value in self.notify.items() if not isinstance(value, bool))
        if not_bool:
            raise ConfigError(f"notify values must be true or false: {not_bool}")


@dataclass(frozen=True)
class SiteConfig:
    """Configuration for a single site to monitor."""

    name: str
    url: str
    active: bool = True
    settings: SiteSettingsConfig | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("Site name cannot be empty")
        if not self.url:
            raise ConfigError(f"URL cannot be empty for '{self.name}'")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"URL must start with http:// or https:// for '{self.name}'")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory.

    Returns ~/.local/share/sitewatch/sitewatch.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "sitewatch" / "sitewatch.db")


# Default database path (XDG-compliant user data directory)
DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for SQLite database."""

    path: str = DEFAULT_DB_PATH
    retention_days: int = 30

    def __post_init__(self) -> None:
        if self.retention_days < 1:
            raise ConfigError("Database retention_days must be at least 1")


@dataclass(frozen=True)
class AlertsConfig:
    """Configuration for outbound webhook alerts."""

    webhook_url: str | None = None  # seeded into the settings table on startup
    rate_limit_seconds: int = 300  # minimum time between alerts per site and anomaly type
    allow_private: bool = False  # allow webhooks on private network addresses

    def __post_init__(self) -> None:
        if self.webhook_url is not None and not self.webhook_url.startswith(("http://", "https://")):
            raise ConfigError(f"Webhook URL must start with http:// or https://, got '{self.webhook_url}'")
        if self.rate_limit_seconds < 0:
            raise ConfigError(f"Alerts rate_limit_seconds must be non-negative, got {self.rate_limit_seconds}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    sites: list[SiteConfig] = field(default_factory=list)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)

    def __post_init__(self) -> None:
        names = [site.name for site in self.sites]
        duplicates = [name for name in names if names.count(name) > 1]
        if duplicates:
            raise ConfigError(f"Duplicate site names found: {set(duplicates)}")


def _parse_site_settings(data: dict | None, site_name: str) -> SiteSettingsConfig | None:
    """Parse the optional ``settings`` block of a site entry."""
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ConfigError(f"'settings' for site '{site_name}' must be a dictionary")

    notify = data.get("notify", {})
    if not isinstance(notify, dict):
        raise ConfigError(f"'notify' for site '{site_name}' must be a dictionary")

    threshold = data.get("response_time_threshold")
    custom_name = data.get("custom_name")

    return SiteSettingsConfig(
        response_time_threshold=int(threshold) if threshold is not None else None,
        ssl_expiry_warning_days=int(data.get("ssl_expiry_warning_days", 7)),
        check_interval=int(data.get("check_interval", 60)),
        custom_name=str(custom_name) if custom_name is not None else None,
        notify={str(key): value for key, value in notify.items()},
        severity_threshold=str(data.get("severity_threshold", "low")),
        escalation_threshold_minutes=int(data.get("escalation_threshold_minutes", 5)),
    )


def _parse_site_config(data: dict, index: int) -> SiteConfig:
    """Parse a single site configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Site entry {index} must be a dictionary")

    name = data.get("name")
    url = data.get("url")

    if name is None:
        raise ConfigError(f"Site entry {index} is missing 'name' field")
    if url is None:
        raise ConfigError(f"Site entry {index} is missing 'url' field")

    return SiteConfig(
        name=str(name),
        url=str(url),
        active=bool(data.get("active", True)),
        settings=_parse_site_settings(data.get("settings"), str(name)),
    )


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    return MonitorConfig(
        tick_seconds=int(data.get("tick_seconds", 10)),
        max_workers=int(data.get("max_workers", 10)),
        probe_timeout=float(data.get("probe_timeout", 10.0)),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(
        path=str(data.get("path", DEFAULT_DB_PATH)),
        retention_days=int(data.get("retention_days", 30)),
    )


def _parse_alerts_config(data: dict | None) -> AlertsConfig:
    """Parse alerts configuration section."""
    if data is None:
        return AlertsConfig()
    if not isinstance(data, dict):
        raise ConfigError("'alerts' section must be a dictionary")

    webhook_url = data.get("webhook_url")

    return AlertsConfig(
        webhook_url=str(webhook_url) if webhook_url else None,
        rate_limit_seconds=int(data.get("rate_limit_seconds", 300)),
        allow_private=bool(data.get("allow_private", False)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SITEWATCH_TICK_SECONDS: Override monitor.tick_seconds
    - SITEWATCH_DB_PATH: Override database.path
    - SITEWATCH_DB_RETENTION_DAYS: Override database.retention_days
    - SITEWATCH_WEBHOOK_URL: Override alerts.webhook_url
    """
    for section in ("monitor", "database", "alerts"):
        if config_data.get(section) is None:
            config_data[section] = {}

    tick_seconds = os.environ.get("SITEWATCH_TICK_SECONDS")
    if tick_seconds is not None:
        config_data["monitor"]["tick_seconds"] = int(tick_seconds)

    db_path = os.environ.get("SITEWATCH_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    db_retention = os.environ.get("SITEWATCH_DB_RETENTION_DAYS")
    if db_retention is not None:
        config_data["database"]["retention_days"] = int(db_retention)

    webhook_url = os.environ.get("SITEWATCH_WEBHOOK_URL")
    if webhook_url is not None:
        config_data["alerts"]["webhook_url"] = webhook_url

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    sites_data = data.get("sites")
    sites: list[SiteConfig] = []
    if sites_data is not None:
        if not isinstance(sites_data, list):
            raise ConfigError("'sites' must be a list")
        sites = [_parse_site_config(site_data, i) for i, site_data in enumerate(sites_data)]

    return Config(
        sites=sites,
        monitor=_parse_monitor_config(data.get("monitor")),
        database=_parse_database_config(data.get("database")),
        alerts=_parse_alerts_config(data.get("alerts")),
    )
