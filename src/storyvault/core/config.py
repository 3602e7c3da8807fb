"""
Configuration management for storyvault.

Uses pydantic-settings for environment variable support, merged with an
optional YAML file. Environment variables always win over YAML values.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENV_PREFIX = "STORYVAULT_"

VALID_BACKENDS = frozenset({"sqlite", "memory"})
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class Settings(BaseSettings):
    """storyvault configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # History
    max_states: int = Field(
        default=100,
        description="Maximum number of moments kept in the history stack",
    )
    max_expired: int = Field(
        default=100,
        description="Maximum number of expired moment titles remembered (0 disables)",
    )
    max_session_states: int = Field(
        default=20,
        description="Moments kept in the session snapshot (0 disables session snapshots)",
    )
    save_depth: int = Field(
        default=100,
        description="Moments kept in a save slot",
    )

    # Storage
    db_name: str = Field(
        default="idb",
        description="Name of the object store database holding save slots",
    )
    data_directory: Path = Field(
        default=Path("~/.storyvault"),
        description="Directory for the SQLite database and the legacy key-value file",
    )
    backend: str = Field(
        default="sqlite",
        description="Object store backend: sqlite or memory",
    )
    session_quota_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Capacity of the in-memory session store in bytes",
    )

    # Save policy
    compress_autosave: bool = Field(
        default=False,
        description="Delta-encode the autosave (slot 0) like user slots",
    )
    reject_opaque_values: bool = Field(
        default=False,
        description="Refuse to save callables and custom objects instead of quarantining them",
    )

    log_level: str = Field(
        default="WARNING",
        description="Log level used by the command line interface",
    )

    @field_validator("max_states")
    @classmethod
    def validate_max_states(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_states must be at least 1, got {v}")
        return v

    @field_validator("max_expired", "max_session_states", "save_depth", "session_quota_bytes")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"value must be non-negative, got {v}")
        return v

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend choice."""
        if v.lower() not in VALID_BACKENDS:
            raise ValueError(f"backend must be one of: {sorted(VALID_BACKENDS)}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {sorted(VALID_LOG_LEVELS)}")
        return v.upper()

    @property
    def data_path(self) -> Path:
        """``data_directory`` with ``~`` expanded."""
        return self.data_directory.expanduser()


def _find_config_file() -> Path | None:
    """
    Find YAML config file in standard locations.

    Search order:
    1. STORYVAULT_CONFIG_FILE environment variable
    2. ./storyvault.yaml (current directory)
    3. ~/.storyvault/config.yaml (user home)

    Returns:
        Path to config file if found, None otherwise
    """
    env_config = os.getenv(f"{ENV_PREFIX}CONFIG_FILE")
    if env_config:
        path = Path(env_config).expanduser()
        if path.exists():
            return path
        logger.warning(f"Config file from {ENV_PREFIX}CONFIG_FILE not found: {path}")

    search_paths = [
        Path("storyvault.yaml"),
        Path("storyvault.yml"),
        Path.home() / ".storyvault" / "config.yaml",
    ]

    for path in search_paths:
        if path.exists():
            logger.debug(f"Found config file: {path}")
            return path

    return None


def _load_yaml_config(path: Path) -> dict:
    """
    Load configuration from YAML file.

    Raises:
        ValueError: If YAML file is invalid
    """
    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {path}: {e}") from e

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a dictionary, got {type(config).__name__}")

    logger.info(f"Loaded configuration from: {path}")
    return config


def load_settings(config_path: Path | str | None = None) -> Settings:
    """
    Load Settings from a YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, searches standard locations.
    """
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        path = _find_config_file()

    yaml_config = _load_yaml_config(path) if path else {}

    # env vars take precedence; drop YAML keys they override
    filtered_config = {}
    for key, value in yaml_config.items():
        env_key = f"{ENV_PREFIX}{key.upper()}"
        if os.getenv(env_key) is None:
            filtered_config[key] = value
        else:
            logger.debug(f"Skipping YAML key '{key}' - overridden by {env_key}")

    return Settings(**filtered_config)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded from (in order of precedence):
    1. Environment variables (STORYVAULT_* prefix)
    2. YAML config file (if found)
    3. Default values
    """
    return load_settings()


def reset_settings() -> None:
    """Clear the cached settings, forcing reload on next get_settings() call."""
    get_settings.cache_clear()
