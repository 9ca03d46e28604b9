"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
PROVIDERS = {"coingecko"}


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/smartalerts.db"


@dataclass
class MarketDataConfig:
    """Market data provider configuration."""

    provider: str = "coingecko"
    base_url: str = "https://api.coingecko.com/api/v3"
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0
    cache_ttl_seconds: float = 30.0


@dataclass
class SchedulerConfig:
    """Evaluation scheduler configuration."""

    interval_seconds: float = 60.0
    max_workers: int = 8
    fetch_timeout_seconds: float = 15.0
    tick_timeout_seconds: float = 45.0


@dataclass
class DispatchConfig:
    """Dispatcher retry and concurrency settings."""

    max_retries: int = 3
    backoff_seconds: float = 1.0
    backoff_factor: float = 2.0
    timeout_seconds: float = 10.0
    max_workers: int = 8


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = "alerts@cryptosden.app"
    app_url: str = "http://localhost:3000"


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    market = config_dict.get("market_data") or {}
    provider = market.get("provider", MarketDataConfig.provider)
    if provider not in PROVIDERS:
        raise ConfigValidationError(f"Unknown market data provider: {provider}")

    scheduler = config_dict.get("scheduler") or {}
    interval = scheduler.get("interval_seconds", SchedulerConfig.interval_seconds)
    if float(interval) <= 0:
        raise ConfigValidationError("Scheduler interval must be positive")
    if int(scheduler.get("max_workers", SchedulerConfig.max_workers)) < 1:
        raise ConfigValidationError("Scheduler max_workers must be at least 1")

    dispatch = config_dict.get("dispatch") or {}
    if int(dispatch.get("max_retries", DispatchConfig.max_retries)) < 0:
        raise ConfigValidationError("Dispatch max_retries cannot be negative")

    advanced = config_dict.get("advanced") or {}
    log_level = str(advanced.get("log_level", AdvancedConfig.log_level)).upper()
    if log_level not in LOG_LEVELS:
        raise ConfigValidationError(f"Invalid log level: {log_level}")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    _validate_config(config_dict)

    notif_dict = config_dict.get("notifications") or {}
    advanced_dict = dict(config_dict.get("advanced") or {})
    if "log_level" in advanced_dict:
        advanced_dict["log_level"] = str(advanced_dict["log_level"]).upper()

    return AppConfig(
        database=DatabaseConfig(**(config_dict.get("database") or {})),
        market_data=MarketDataConfig(**(config_dict.get("market_data") or {})),
        scheduler=SchedulerConfig(**(config_dict.get("scheduler") or {})),
        dispatch=DispatchConfig(**(config_dict.get("dispatch") or {})),
        notifications=NotificationsConfig(
            email=EmailNotificationConfig(**(notif_dict.get("email") or {})),
        ),
        advanced=AdvancedConfig(**advanced_dict),
    )
