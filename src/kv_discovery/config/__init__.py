"""Configuration helpers."""

from .loader import ConfigError, config_from_mapping, load_config
from .models import DiscoveryConfig

__all__ = [
    "ConfigError",
    "DiscoveryConfig",
    "config_from_mapping",
    "load_config",
]
