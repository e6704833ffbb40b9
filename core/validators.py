"""Configuration loading and validation for the Lambda container.

Configuration comes from, in order:
- the STRUTS_LAMBDA_CONFIG environment variable (JSON, set by the deployment)
- a YAML file (STRUTS_LAMBDA_CONFIG_PATH, or config.yaml in the working dir)
- built-in defaults
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from core.config_schema import ContainerConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "STRUTS_LAMBDA_CONFIG"
CONFIG_PATH_ENV_VAR = "STRUTS_LAMBDA_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yaml"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


def validate_config(data: Any) -> ContainerConfig:
    """Validate a raw configuration mapping.

    Args:
        data: Parsed configuration (from YAML or JSON)

    Returns:
        Validated ContainerConfig

    Raises:
        ConfigurationError: If the structure or any value is invalid
    """
    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    try:
        return ContainerConfig.model_validate(data)
    except ValidationError as e:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid container configuration:\n{problems}") from e


def load_and_validate_config(config_path: str = DEFAULT_CONFIG_PATH) -> ContainerConfig:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML file

    Returns:
        Validated ContainerConfig

    Raises:
        ConfigurationError: If the YAML or the values are invalid
        FileNotFoundError: If the file doesn't exist
    """
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")

    config = validate_config(data)
    logger.info(
        f"Configuration loaded from {config_path}",
        extra={"event_type": config.event_type, "application": config.application},
    )
    return config


def load_config(environ: Optional[Mapping[str, str]] = None) -> ContainerConfig:
    """Resolve the container configuration for this execution environment.

    Args:
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated ContainerConfig

    Raises:
        ConfigurationError: If a configuration source exists but is invalid
        FileNotFoundError: If STRUTS_LAMBDA_CONFIG_PATH points at a missing file
    """
    if environ is None:
        environ = os.environ

    config_json = environ.get(CONFIG_ENV_VAR)
    if config_json:
        try:
            data: Dict[str, Any] = json.loads(config_json)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {CONFIG_ENV_VAR}: {e}") from e
        logger.info("Loaded configuration from environment variable")
        return validate_config(data)

    explicit_path = environ.get(CONFIG_PATH_ENV_VAR)
    if explicit_path:
        return load_and_validate_config(explicit_path)

    if Path(DEFAULT_CONFIG_PATH).is_file():
        return load_and_validate_config(DEFAULT_CONFIG_PATH)

    logger.info("No configuration found, using defaults")
    return ContainerConfig()
