"""Process-wide configuration access."""

from typing import Any

from cogitap.config.manager import ConfigManager

_config_manager = ConfigManager()

config_manager = _config_manager


def get_config(path: str, default: Any = None) -> Any:
    """Get configuration value by path."""
    return config_manager.get(path, default)


def set_config(path: str, value: Any) -> bool:
    """Set configuration value by path."""
    return config_manager.set(path, value)


def reload_config() -> bool:
    """Reload configuration from disk."""
    return config_manager.load()
