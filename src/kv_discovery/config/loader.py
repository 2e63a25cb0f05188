from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .models import DiscoveryConfig


class ConfigError(RuntimeError):
    """Raised when configuration loading fails."""


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")
_ROOT_SECTION = "kv_discovery"


def get_default_config_path() -> Path | None:
    """Return the first default config path that exists."""
    candidates = [
        Path.cwd() / "kv_discovery.yaml",
        Path.cwd() / "kv_discovery.yml",
        Path.home() / ".kv_discovery.yaml",
        Path("/etc/kv_discovery/config.yaml"),
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_config(path: str | Path | None = None) -> DiscoveryConfig:
    """Load a YAML config file into DiscoveryConfig.

    Without a path the default locations are searched; if none exists the
    built-in defaults are returned.
    """
    if not path:
        path = get_default_config_path()
        if path is None:
            return DiscoveryConfig()
    data = _load_config_mapping(path)
    return config_from_mapping(data, source=str(path))


def config_from_mapping(data: Mapping[str, Any], *, source: str = "<mapping>") -> DiscoveryConfig:
    """Build a DiscoveryConfig from an already parsed mapping."""
    try:
        return DiscoveryConfig.from_dict(_normalize_config_root(data))
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration in {source}: {exc}") from exc


def _load_config_mapping(path: str | Path) -> dict[str, Any]:
    config_path = Path(path).expanduser()
    if config_path.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError(f"Unsupported config file type: {config_path.suffix}")
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to load config file: {config_path}") from exc
    if not isinstance(parsed, Mapping):
        raise ConfigError("Configuration must be a mapping")
    return _expand_env_in_data(dict(parsed))


def _expand_env_in_data(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_env_value(value)
    if isinstance(value, Mapping):
        return {key: _expand_env_in_data(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_expand_env_in_data(item) for item in value]
    return value


def _expand_env_value(value: str) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(name)
        if env_value is None or env_value == "":
            if default is None:
                raise ConfigError(
                    f"Environment variable '{name}' is not set and no default provided"
                )
            return default
        return env_value

    return _ENV_PATTERN.sub(replace, value)


def _normalize_config_root(data: Mapping[str, Any]) -> dict[str, Any]:
    if _ROOT_SECTION not in data:
        return dict(data)
    nested = data[_ROOT_SECTION]
    if not isinstance(nested, Mapping):
        raise ConfigError(f"{_ROOT_SECTION} section must be a mapping")
    return dict(nested)
