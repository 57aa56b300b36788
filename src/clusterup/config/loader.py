"""Configuration loading with hierarchy support."""

import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from clusterup.config.defaults import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROJECT_CONFIG_NAME,
    SYSTEM_CONFIG_FILE,
)
from clusterup.config.schemas import ClusterUpConfig
from clusterup.telemetry.logger import get_logger

logger = get_logger(__name__)


def get_default_config_path() -> Path:
    """Get the default user configuration path."""
    return DEFAULT_CONFIG_FILE


def get_config_paths() -> list[Path]:
    """Get ordered list of existing configuration paths to merge."""
    candidates = [
        SYSTEM_CONFIG_FILE,
        get_default_config_path(),
        Path.cwd() / PROJECT_CONFIG_NAME,
    ]
    return [path for path in candidates if path.exists()]


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    with open(path, "r") as f:
        content = yaml.safe_load(f) or {}
    if not isinstance(content, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return content


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def get_env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Get configuration overrides from environment variables.

    Variables are prefixed with CLUSTERUP_ and use double underscores for
    nested keys. Values stay strings; the schema coerces them. For example:
    - CLUSTERUP_LOG_LEVEL=DEBUG -> {"log_level": "DEBUG"}
    - CLUSTERUP_SSH__COMMAND_TIMEOUT=600 -> {"ssh": {"command_timeout": "600"}}
    - CLUSTERUP_DEPLOY__SKIP_STEPS=system_prep,ip_forward

    Args:
        environ: Environment to read (defaults to os.environ)
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        parts = key[len(ENV_PREFIX):].lower().split("__")

        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})
            if not isinstance(current, dict):
                break
        else:
            current[parts[-1]] = value

    return overrides


def load_config(
    config_path: Optional[Path] = None,
    include_env: bool = True,
    environ: Optional[Mapping[str, str]] = None,
) -> ClusterUpConfig:
    """Load configuration from all sources with proper hierarchy.

    Loading order (later overrides earlier):
    1. Default values (from schema)
    2. System config (/etc/clusterup/config.yaml)
    3. User config (~/.clusterup/config.yaml)
    4. Project config (.clusterup.yaml in cwd)
    5. Explicit config file (--config argument)
    6. Environment variables (CLUSTERUP_*)

    Args:
        config_path: Optional explicit configuration file path
        include_env: Whether to include environment variable overrides
        environ: Environment mapping used instead of os.environ

    Returns:
        Validated ClusterUpConfig instance

    Raises:
        FileNotFoundError: If an explicit config path does not exist
    """
    merged_config: dict[str, Any] = {}

    for path in get_config_paths():
        try:
            merged_config = deep_merge(merged_config, load_yaml_config(path))
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning("Skipping unreadable config file", path=str(path), error=str(e))

    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        merged_config = deep_merge(merged_config, load_yaml_config(config_path))

    if include_env:
        merged_config = deep_merge(merged_config, get_env_overrides(environ))

    return ClusterUpConfig(**merged_config)


def create_default_config(path: Path) -> None:
    """Write a default configuration file.

    Args:
        path: Path where to create the config file
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = ClusterUpConfig().model_dump(mode="json", exclude_none=True)

    yaml_content = "# clusterup configuration\n# Environment overrides: CLUSTERUP_<SECTION>__<KEY>\n\n"
    yaml_content += yaml.dump(config_dict, default_flow_style=False, sort_keys=False)

    with open(path, "w") as f:
        f.write(yaml_content)
