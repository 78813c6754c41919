"""Configuration module for callbridge."""

from callbridge.config.loader import load_config, get_config_path
from callbridge.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
