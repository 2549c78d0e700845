"""Configuration schema with validation."""

import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def default_data_dir() -> Path:
    """Data directory from COGITAP_HOME, falling back to ~/.cogitap."""
    home = os.getenv("COGITAP_HOME")
    return Path(home) if home else Path.home() / ".cogitap"


class GeneralConfig(BaseModel):
    """General application settings."""

    app_name: str = Field(default="Cogitap", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging verbosity")
    data_dir: Path = Field(
        default_factory=default_data_dir, description="Directory for the database and logs"
    )
    database_url: str | None = Field(
        default=None, description="SQLAlchemy URL; defaults to a SQLite file in data_dir"
    )

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'cogitap.db'}"


class ProviderConfig(BaseModel):
    """LLM provider settings shared by all adapters."""

    request_timeout: float = Field(default=120.0, description="HTTP timeout in seconds", gt=0)
    openrouter_referer: str = Field(default="Cogitap", description="OpenRouter HTTP-Referer")
    openrouter_title: str = Field(default="Cogitap/1.0", description="OpenRouter X-Title")
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version header")
    anthropic_max_tokens: int = Field(default=4096, description="Anthropic max_tokens", ge=1)


class ChatConfig(BaseModel):
    """Conversation defaults and tool loop behaviour."""

    default_title: str = Field(default="New Chat", description="Title for new conversations")
    default_system_prompt: str = Field(
        default="You are a helpful assistant.", description="System prompt for new conversations"
    )
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tool_iterations: int = Field(
        default=4, description="Model requests allowed per turn while tools are requested", ge=1
    )
    tool_status_text: str = Field(
        default="Invoking tool...", description="Shown while a tool call is being streamed"
    )
    tool_limit_text: str = Field(
        default="Stopped after reaching the tool call limit.",
        description="Final content when the tool loop ends without text",
    )
    error_prefix: str = Field(default="Error: ", description="Prefix for failed turns")


class MemorySettings(BaseModel):
    """Text matching settings for memory recall."""

    stop_words: list[str] = Field(default_factory=list, description="Tokens ignored when matching")
    stop_characters: list[str] = Field(
        default_factory=list, description="Extra token separators on top of the defaults"
    )
    synonym_groups: list[list[str]] = Field(
        default_factory=list, description="Groups of interchangeable words"
    )
    matching_file: Path | None = Field(
        default=None, description="YAML or JSON file extending the lists above"
    )


class MCPConfig(BaseModel):
    """MCP (Model Context Protocol) settings."""

    request_timeout: float = Field(default=30.0, description="JSON-RPC timeout in seconds", gt=0)
    client_name: str = Field(default="cogitap", description="Client identifier sent to servers")


class CogitapConfig(BaseModel):
    """Complete Cogitap configuration."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
