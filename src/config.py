"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/stocks.db"


@dataclass
class SourceConfig:
    """Snapshot source configuration."""

    screener: str = "day_gainers"
    max_stocks: int = 50
    max_retries: int = 3
    retry_delay_seconds: float = 1.0


@dataclass
class ScheduleConfig:
    """Cycle schedule configuration."""

    interval_minutes: int = 1
    initial_delay_seconds: float = 5.0


@dataclass
class AlertsConfig:
    """Built-in alert thresholds."""

    high_gain_threshold: float = 20.0


@dataclass
class WebSocketConfig:
    """Distribution hub configuration."""

    host: str = "0.0.0.0"
    port: int = 3002
    heartbeat_interval_seconds: float = 30.0
    catch_up_delay_seconds: float = 1.0
    send_timeout_seconds: float = 10.0


@dataclass
class RetentionConfig:
    """History retention configuration."""

    days: int = 30
    prune_interval_hours: float = 1.0


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    websocket: WebSocketConfig = field(default_factory=WebSocketConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


# Environment variables that override a single config value
ENV_OVERRIDES = {
    "DATABASE_PATH": ("database", "path", str),
    "SCRAPING_INTERVAL_MINUTES": ("schedule", "interval_minutes", int),
    "ALERT_THRESHOLDS_PERCENT_CHANGE": ("alerts", "high_gain_threshold", float),
    "WEBSOCKET_PORT": ("websocket", "port", int),
    "MAX_STOCKS_TO_TRACK": ("source", "max_stocks", int),
}


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


def _apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Apply single-value environment overrides."""
    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ConfigValidationError(f"Invalid value for {env_name}: {raw!r}")
        config_dict.setdefault(section, {})
        if config_dict[section] is None:
            config_dict[section] = {}
        config_dict[section][key] = value
    return config_dict


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values."""
    db_path = config.database.path
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    if config.schedule.interval_minutes < 1:
        raise ConfigValidationError("Schedule interval must be at least 1 minute")

    if not 0 <= config.websocket.port <= 65535:
        raise ConfigValidationError(f"Invalid WebSocket port: {config.websocket.port}")

    if config.websocket.heartbeat_interval_seconds <= 0:
        raise ConfigValidationError("Heartbeat interval must be positive")

    if config.source.max_stocks < 1:
        raise ConfigValidationError("max_stocks must be at least 1")

    if config.retention.days < 1:
        raise ConfigValidationError("Retention must keep at least 1 day")


def _section(config_dict: dict[str, Any], name: str, section_cls: type) -> Any:
    """Build one config section, coercing numeric strings left by ${VAR}."""
    section = config_dict.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigValidationError(f"Config section '{name}' must be a mapping")

    field_types = {f.name: f.type for f in fields(section_cls)}
    values = {}
    for key, value in section.items():
        field_type = field_types.get(key)
        if field_type in (int, float):
            if isinstance(value, str):
                try:
                    value = field_type(value.strip())
                except ValueError:
                    raise ConfigValidationError(
                        f"Invalid value for {name}.{key}: {value!r}"
                    ) from None
            elif isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigValidationError(
                    f"Invalid value for {name}.{key}: {value!r}"
                )
        values[key] = value

    try:
        return section_cls(**values)
    except TypeError as e:
        raise ConfigValidationError(f"Invalid configuration: {e}") from e


def build_config(config_dict: dict[str, Any]) -> AppConfig:
    """
    Build and validate an AppConfig from a raw mapping.

    Raises:
        ConfigValidationError: If a section has unknown keys or bad values
    """
    config_dict = _apply_env_overrides(_substitute_env_vars(config_dict))

    config = AppConfig(
        database=_section(config_dict, "database", DatabaseConfig),
        source=_section(config_dict, "source", SourceConfig),
        schedule=_section(config_dict, "schedule", ScheduleConfig),
        alerts=_section(config_dict, "alerts", AlertsConfig),
        websocket=_section(config_dict, "websocket", WebSocketConfig),
        retention=_section(config_dict, "retention", RetentionConfig),
        advanced=_section(config_dict, "advanced", AdvancedConfig),
    )

    _validate_config(config)
    return config


def load_config(config_path: Optional[str]) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file, or None for defaults

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    if config_path is None:
        return build_config({})

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ConfigValidationError("Configuration root must be a mapping")

    return build_config(raw_config)
