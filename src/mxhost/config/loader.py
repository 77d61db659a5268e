"""Reading and writing mxhost.yaml."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mxhost.config.schema import HostConfig

DEFAULT_CONFIG_PATH = Path.home() / ".mxhost" / "mxhost.yaml"

CONFIG_HEADER = "# mxhost configuration. Missing keys fall back to their defaults.\n"


class ConfigError(Exception):
    """Configuration loading or validation error."""


def resolve_config_path(path: str | Path | None = None) -> Path:
    """Expand a user-supplied config location, falling back to the default."""
    if path is None or path == "":
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _read_mapping(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {path} must be a mapping")
    return data


def load_config(path: str | Path | None = None) -> HostConfig:
    """Load and validate mxhost configuration.

    A missing or empty file yields the defaults, so the host runs without
    any configuration at all.

    Args:
        path: Config file location (default: ~/.mxhost/mxhost.yaml)

    Returns:
        Validated configuration object

    Raises:
        ConfigError: If the file exists but cannot be read, parsed or validated
    """
    path = resolve_config_path(path)
    if not path.exists():
        return HostConfig()

    try:
        return HostConfig.model_validate(_read_mapping(path))
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def save_config(config: HostConfig, path: str | Path | None = None) -> Path:
    """Write configuration as YAML, creating parent directories.

    Returns:
        The path written to

    Raises:
        ConfigError: If the file cannot be written
    """
    path = resolve_config_path(path)
    body = yaml.safe_dump(config.model_dump(mode="json"), default_flow_style=False, sort_keys=False)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(CONFIG_HEADER + body)
    except OSError as e:
        raise ConfigError(f"Failed to write config to {path}: {e}") from e
    return path
