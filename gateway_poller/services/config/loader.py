"""
Configuration Loader

Reads the poller YAML file, validates it and turns it into a PollerConfig.
Environment variables override the file location and storage paths.
"""

import os
from pathlib import Path
from typing import Any

import yaml

from gateway_poller.common.config import PollerConfig, load_poller_config
from gateway_poller.common.exceptions import ConfigError
from gateway_poller.common.logging_setup import get_service_logger

from .validator import ConfigValidator

logger = get_service_logger("config.loader")

POSSIBLE_PATHS = [
    "/etc/gateway-poller/config.yaml",
    "/opt/gateway-poller/config.yaml",
    Path(__file__).parent.parent.parent.parent / "config.yaml",
]


def find_config_path() -> str:
    """Find configuration file (POLLER_CONFIG wins)"""
    env_path = os.environ.get("POLLER_CONFIG")
    if env_path:
        return env_path

    for path in POSSIBLE_PATHS:
        path = Path(path)
        if path.exists():
            return str(path)

    return str(POSSIBLE_PATHS[0])


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Parse a YAML file into a dict"""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")
    return data


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply POLLER_STATE_DIR / POLLER_DB_PATH on top of file values"""
    data = dict(data)
    if os.environ.get("POLLER_STATE_DIR"):
        data["state_dir"] = os.environ["POLLER_STATE_DIR"]
    if os.environ.get("POLLER_DB_PATH"):
        data["db_path"] = os.environ["POLLER_DB_PATH"]
    return data


def build_config(data: dict[str, Any], validate: bool = True) -> PollerConfig:
    """
    Validate a parsed config dict and convert it.

    Raises:
        ConfigError: if validation fails or a value cannot be converted
    """
    data = apply_env_overrides(data)

    if validate:
        is_valid, errors = ConfigValidator().validate(data)
        if not is_valid:
            raise ConfigError(
                f"Invalid configuration ({len(errors)} errors): " + "; ".join(errors)
            )

    try:
        return load_poller_config(data)
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config_file(path: str | Path | None = None, validate: bool = True) -> PollerConfig:
    """Load, validate and convert the poller configuration file"""
    path = path or find_config_path()
    config = build_config(read_config_file(path), validate=validate)
    logger.info(
        f"Loaded config from {path}: {len(config.gateways)} gateways",
        extra={"config_path": str(path)},
    )
    return config
