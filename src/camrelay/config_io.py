"""YAML configuration loading.

The server configuration is read once at startup and never written back.

Lookup Order:
    1. Path passed to load_config() (CLI --config)
    2. CONFIG_PATH environment variable
    3. ./config.yml

The file is parsed with ``yaml.safe_load``, so a JSON document loads as well.

Logging Strategy:
    INFO  - Config path and feed count
    ERROR - Missing file, parse errors, invalid configuration (via ConfigError)
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Final, Optional

import yaml
from pydantic import ValidationError

from .models.feed import ServerConfig
from .utils.strings import mask_credentials

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONFIG_PATH_ENV: Final[str] = "CONFIG_PATH"
DEFAULT_CONFIG_PATH: Final[Path] = Path("config.yml")


class ConfigError(Exception):
    """Configuration file missing, unparseable or invalid."""


# ============================================================================
# Loading
# ============================================================================

def resolve_config_path(path: Optional[str | Path] = None) -> Path:
    if path:
        return Path(path)
    env_path = os.getenv(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(path: Optional[str | Path] = None) -> ServerConfig:
    """Load and validate the server configuration.

    Args:
        path: Config file; see module docstring for the fallback order

    Returns:
        Validated ServerConfig

    Raises:
        ConfigError: File missing, YAML error, or validation failure
    """
    config_path = resolve_config_path(path)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}") from None
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {config_path} is not valid YAML: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config file {config_path} must contain a mapping, got {type(data).__name__}"
        )

    try:
        config = ServerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration in {config_path}:\n{mask_credentials(str(e))}"
        ) from e

    logger.info(f"Config: {config_path} ({len(config.feeds)} feed(s))")
    return config
