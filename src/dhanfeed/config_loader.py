"""Configuration loader with Pydantic validation and environment variable interpolation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables at module level
load_dotenv(find_dotenv(usecwd=True))

from dhanfeed.constants import (
    DEFAULT_AUTH_TYPE,
    DEFAULT_FEED_URL,
    DEFAULT_FEED_VERSION,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_MARKET_CLOSE,
    DEFAULT_MARKET_OPEN,
    DEFAULT_RECONNECT_CAP_MS,
    DEFAULT_RECONNECT_FLOOR_MS,
    DEFAULT_RECONNECT_MULTIPLIER,
    DEFAULT_SUBSCRIBER_QUEUE_SIZE,
    DEFAULT_UTC_OFFSET_MINUTES,
    MAX_SUBSCRIPTION_BATCH,
    LogLevel,
)


def interpolate_env_vars(value: Any) -> Any:
    """
    Interpolate environment variables in string values.

    Supports formats:
    - ${VAR_NAME} - empty string if not set
    - ${VAR_NAME:default} - optional with default value
    """
    if not isinstance(value, str):
        return value

    pattern = r"\$\{([^}:]+)(?::([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)

        env_value = os.environ.get(var_name)

        if env_value is not None:
            return env_value
        elif default is not None:
            return default
        else:
            # Unset credentials surface later as a ConfigurationError at connect
            return ""

    return re.sub(pattern, replacer, value)


def process_config_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively process config dict to interpolate env vars."""
    result = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = process_config_dict(value)
        elif isinstance(value, list):
            result[key] = [
                process_config_dict(item) if isinstance(item, dict) else interpolate_env_vars(item)
                for item in value
            ]
        else:
            result[key] = interpolate_env_vars(value)
    return result


# ============================================
# Pydantic Configuration Models
# ============================================


class EnvironmentConfig(BaseModel):
    """Environment and runtime settings."""

    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = False


class FeedConfig(BaseModel):
    """Live market feed connection settings."""

    url: str = DEFAULT_FEED_URL
    client_id: str = ""
    access_token: str = ""
    version: int = DEFAULT_FEED_VERSION
    auth_type: int = DEFAULT_AUTH_TYPE
    batch_size: int = MAX_SUBSCRIPTION_BATCH
    reconnect_floor_ms: int = DEFAULT_RECONNECT_FLOOR_MS
    reconnect_cap_ms: int = DEFAULT_RECONNECT_CAP_MS
    reconnect_multiplier: float = DEFAULT_RECONNECT_MULTIPLIER
    open_timeout_seconds: float = 10.0
    ping_interval_seconds: float | None = 20.0
    max_frame_bytes: int = 2**20
    auto_start: bool = True

    @field_validator("client_id", "access_token", mode="before")
    @classmethod
    def coerce_credential(cls, v: Any) -> str:
        """Client ids are numeric in the broker console; keep them as text."""
        if v is None:
            return ""
        return str(v)

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Validate batch size is within what the feed accepts."""
        if not 1 <= v <= MAX_SUBSCRIPTION_BATCH:
            raise ValueError(f"batch_size must be 1-{MAX_SUBSCRIPTION_BATCH}, got: {v}")
        return v

    @field_validator("reconnect_floor_ms", "reconnect_cap_ms")
    @classmethod
    def validate_positive_delay(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Reconnect delay must be positive, got: {v}")
        return v

    @field_validator("reconnect_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError(f"reconnect_multiplier must be >= 1.0, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_reconnect_range(self) -> FeedConfig:
        """Validate the backoff floor does not exceed the cap."""
        if self.reconnect_floor_ms > self.reconnect_cap_ms:
            raise ValueError(
                f"reconnect_floor_ms ({self.reconnect_floor_ms}) must not exceed "
                f"reconnect_cap_ms ({self.reconnect_cap_ms})"
            )
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.access_token)


class SessionConfig(BaseModel):
    """Market hours used to decide whether to subscribe."""

    utc_offset_minutes: int = DEFAULT_UTC_OFFSET_MINUTES
    market_open: str = DEFAULT_MARKET_OPEN
    market_close: str = DEFAULT_MARKET_CLOSE

    @field_validator("market_open", "market_close")
    @classmethod
    def validate_time_format(cls, v: str) -> str:
        """Validate time is in HH:MM format."""
        if not re.match(r"^\d{2}:\d{2}$", v):
            raise ValueError(f"Time must be in HH:MM format, got: {v}")
        hours, minutes = map(int, v.split(":"))
        if not (0 <= hours <= 23 and 0 <= minutes <= 59):
            raise ValueError(f"Invalid time value: {v}")
        return v

    @field_validator("utc_offset_minutes")
    @classmethod
    def validate_offset(cls, v: int) -> int:
        if not -720 <= v <= 840:
            raise ValueError(f"utc_offset_minutes must be -720..840, got: {v}")
        return v


class InstrumentEntry(BaseModel):
    """Raw instrument record as written in config.

    Completeness is checked when the instrument table is built.
    """

    symbol: str = ""
    exchange_segment: str = ""
    security_id: str = ""

    @field_validator("symbol", "exchange_segment", "security_id", mode="before")
    @classmethod
    def coerce_to_str(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()


class InstrumentsConfig(BaseModel):
    """Instrument universe configuration."""

    items: list[InstrumentEntry] = Field(default_factory=list)
    csv_path: str | None = None
    symbols: list[str] = Field(default_factory=list)
    suffix: str = ".NS"


class ServerConfig(BaseModel):
    """HTTP surface (health, start, tick stream)."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    subscriber_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f"Port must be 0-65535, got: {v}")
        return v

    @field_validator("heartbeat_seconds")
    @classmethod
    def validate_heartbeat(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"heartbeat_seconds must be positive, got: {v}")
        return v

    @field_validator("subscriber_queue_size")
    @classmethod
    def validate_queue_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"subscriber_queue_size must be positive, got: {v}")
        return v


class AppConfig(BaseModel):
    """Root application configuration."""

    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    instruments: InstrumentsConfig = Field(default_factory=InstrumentsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def server_enabled(self) -> bool:
        """Check if the HTTP surface should be started."""
        return self.server.enabled


# ============================================
# Configuration Loader
# ============================================


class ConfigLoader:
    """Load and validate configuration from YAML files with env var interpolation."""

    def __init__(self, config_path: str | Path) -> None:
        """
        Initialize config loader.

        Args:
            config_path: Path to the YAML configuration file.
        """
        self.config_path = Path(config_path)
        self._config: AppConfig | None = None

    def load(self) -> AppConfig:
        """
        Load and validate configuration.

        Returns:
            Validated AppConfig instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            yaml.YAMLError: If YAML is invalid.
            pydantic.ValidationError: If config validation fails.
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        if raw_config is None:
            raw_config = {}

        # Interpolate environment variables
        processed_config = process_config_dict(raw_config)

        # Validate with Pydantic
        self._config = AppConfig.model_validate(processed_config)

        return self._config

    @property
    def config(self) -> AppConfig:
        """Get loaded config, loading if necessary."""
        if self._config is None:
            return self.load()
        return self._config

    def reload(self) -> AppConfig:
        """Force reload configuration from disk."""
        self._config = None
        return self.load()


def load_config(config_path: str | Path) -> AppConfig:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated AppConfig instance.
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_config_with_overrides(
    config_path: str | Path,
    *,
    log_level: str | None = None,
    server_enabled: bool | None = None,
    port: int | None = None,
) -> AppConfig:
    """
    Load configuration with CLI overrides.

    Args:
        config_path: Path to the YAML configuration file.
        log_level: Override log level.
        server_enabled: Override whether the HTTP surface runs.
        port: Override HTTP port.

    Returns:
        Validated AppConfig instance with overrides applied.
    """
    config = load_config(config_path)

    updates: dict[str, Any] = {}

    if log_level is not None:
        level_enum = LogLevel(log_level.upper())
        updates["environment"] = config.environment.model_copy(update={"log_level": level_enum})

    server_updates: dict[str, Any] = {}
    if server_enabled is not None:
        server_updates["enabled"] = server_enabled
    if port is not None:
        server_updates["port"] = port
    if server_updates:
        updates["server"] = config.server.model_copy(update=server_updates)

    if updates:
        return config.model_copy(update=updates)

    return config
