"""Configuration loading with environment variable substitution."""

from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from kubeploy.runtime.config.config_data import ProvisionerConfig
from kubeploy.runtime.config.config_utils import (
    load_secret_files_into_env,
    substitute_env_vars,
)

CONFIG_PATH = Path("kubeploy.yaml")
CONFIG_KEY = "provisioner"


def load_config(file_path: Path = CONFIG_PATH) -> ProvisionerConfig:
    """
    Load the provisioner configuration from a YAML file.

    Args:
        file_path: Path to the YAML file (default: kubeploy.yaml)

    Returns:
        Validated ProvisionerConfig

    Raises:
        ValueError: If required environment variables are missing, validation
                   fails, or the YAML structure is invalid (missing
                   'provisioner' key)
        FileNotFoundError: If the YAML file doesn't exist

    YAML Structure Requirements:
        The YAML file must have a top-level 'provisioner:' key. Values may use
        ${VAR}, ${VAR:-default} and ${VAR:?message} placeholders; files found
        in $KUBEPLOY_SECRETS_DIR are exposed as variables first.
    """
    with open(file_path) as f:
        content = f.read()

    loaded_secrets = load_secret_files_into_env()
    if loaded_secrets:
        logger.info(f"Loaded {loaded_secrets} secrets from secrets directory")

    content = substitute_env_vars(content)

    try:
        loaded: dict[str, Any] | None = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML: {e}") from e

    if not loaded or CONFIG_KEY not in loaded:
        raise ValueError(f"Invalid YAML structure: missing '{CONFIG_KEY}' key")

    try:
        config = ProvisionerConfig(**(loaded[CONFIG_KEY] or {}))
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    logger.info(
        f"Loaded provisioner configuration from {file_path} "
        f"(namespace={config.namespace}, registry={config.registry or '-'})"
    )
    return config
