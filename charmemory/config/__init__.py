"""Configuration module for charmemory."""

from charmemory.config.loader import get_config_path, load_config, save_config
from charmemory.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
