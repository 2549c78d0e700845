"""Configuration manager with JSON/YAML persistence."""

import json
import os
from pathlib import Path
from typing import Any

import appdirs
import yaml
from pydantic import ValidationError

from cogitap.config import ConfigFormat, ConfigSection
from cogitap.config.schema import CogitapConfig
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)


class ConfigManager:
    """Loads, validates and saves the Cogitap configuration."""

    def __init__(self, app_name: str = "Cogitap", config_dir: Path | None = None):
        """Initialize configuration manager.

        Args:
            app_name: Name used for the per-user configuration directory
            config_dir: Explicit directory; defaults to COGITAP_CONFIG_DIR or
                the platform's user config directory
        """
        self.app_name = app_name
        self.config: CogitapConfig = CogitapConfig()

        if config_dir is None:
            env_dir = os.getenv("COGITAP_CONFIG_DIR")
            config_dir = Path(env_dir) if env_dir else Path(appdirs.user_config_dir(app_name))
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_file = self.config_dir / "config.json"

        self.load()

    def get(self, path: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated path.

        Example: config_manager.get("chat.max_tool_iterations")
        """
        value: Any = self.config
        for part in path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            elif hasattr(value, part):
                value = getattr(value, part)
            else:
                return default
        return value

    def set(self, path: str, value: Any, save: bool = True) -> bool:
        """Set configuration value by dot-separated path.

        Returns True if the new value validated.
        """
        parts = path.split(".")
        old_value = self.get(path)

        config_dict = self.config.model_dump()
        current = config_dict
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

        try:
            self.config = CogitapConfig(**config_dict)
        except ValidationError as e:
            logger.error(f"Failed to set {path} = {value!r}: {e}")
            return False

        logger.debug(f"Updated config {path}: {old_value!r} -> {value!r}")
        if save:
            self.save()
        return True

    def save(self, path: Path | None = None, format: ConfigFormat = ConfigFormat.JSON):
        """Save configuration to file."""
        path = path or self.config_file
        data = self.config.model_dump(mode="json")

        if format == ConfigFormat.JSON:
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        elif format == ConfigFormat.YAML:
            path.write_text(yaml.safe_dump(data, default_flow_style=False), encoding="utf-8")

        logger.info(f"Saved configuration to {path}")

    def load(self, path: Path | None = None) -> bool:
        """Load configuration from file."""
        path = path or self.config_file

        if not path.exists():
            logger.info("No configuration file found, using defaults")
            return False

        suffix = path.suffix.lower()
        try:
            if suffix == ".json":
                data = json.loads(path.read_text(encoding="utf-8"))
            elif suffix in (".yaml", ".yml"):
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            else:
                logger.error(f"Unknown configuration format: {suffix}")
                return False

            self.config = CogitapConfig(**data)
        except (OSError, ValueError, yaml.YAMLError) as e:
            # pydantic's ValidationError and JSONDecodeError are ValueErrors
            logger.error(f"Failed to load configuration from {path}: {e}")
            return False

        logger.info(f"Loaded configuration from {path}")
        return True

    def export_config(self, path: Path, format: ConfigFormat = ConfigFormat.YAML):
        """Export configuration to an arbitrary file."""
        self.save(path, format=format)

    def reset_section(self, section: ConfigSection):
        """Reset a configuration section to defaults."""
        section_name = section.value
        section_class = type(getattr(self.config, section_name))
        setattr(self.config, section_name, section_class())
        logger.info(f"Reset configuration section: {section_name}")
        self.save()
