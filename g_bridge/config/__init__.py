"""Configuration module for g-bridge."""

from g_bridge.config.loader import get_config_path, load_config, save_config
from g_bridge.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]
