"""Configuration management for Cogitap."""

from enum import Enum


class ConfigFormat(Enum):
    """Supported configuration file formats."""

    JSON = "json"
    YAML = "yaml"


class ConfigSection(Enum):
    """Configuration sections."""

    GENERAL = "general"
    PROVIDERS = "providers"
    CHAT = "chat"
    MEMORY = "memory"
    MCP = "mcp"
