"""Configuration module for memgate."""

from memgate.config.loader import get_config_path, load_config
from memgate.config.schema import Config, ConfigError, Loadout

__all__ = ["Config", "ConfigError", "Loadout", "load_config", "get_config_path"]
