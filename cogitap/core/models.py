"""Database models for conversation, memory and MCP persistence."""

import json
import threading
import uuid
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

Base = declarative_base()

_clock_lock = threading.Lock()
_last_timestamp: datetime | None = None


def now() -> datetime:
    """Strictly increasing wall-clock timestamp.

    Records written back to back must keep their creation order when sorted
    by timestamp, so ties are broken by bumping a microsecond.
    """
    global _last_timestamp
    with _clock_lock:
        current = datetime.now()
        if _last_timestamp is not None and current <= _last_timestamp:
            current = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = current
        return current


def new_id() -> str:
    return str(uuid.uuid4())


class MessageRole(str, Enum):
    """Message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ProviderType(str, Enum):
    """Provider families a model can be served by."""

    OPENAI = "OpenAI"
    ANTHROPIC = "Anthropic"
    GEMINI = "Gemini"
    OPENROUTER = "OpenRouter"
    CUSTOM = "Custom"


class MCPTransportType(str, Enum):
    """Transports an MCP server can be reached through."""

    SSE = "sse"
    STREAMABLE_HTTP = "streamable_http"
    LOCAL_PROCESS = "local_process"


class APIProvider(Base):
    """A configured LLM endpoint and its credentials."""

    __tablename__ = "api_providers"

    id = Column(String, primary_key=True, default=new_id)
    nickname = Column(String, nullable=False)
    provider_type = Column(String, nullable=False, default=ProviderType.CUSTOM.value)
    base_url = Column(String, nullable=False, default="")
    api_key = Column(String, nullable=False, default="")
    created_at = Column(DateTime, default=now, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    models = relationship("ChatModel", back_populates="provider", cascade="all, delete-orphan")

    @property
    def type(self) -> ProviderType:
        try:
            return ProviderType(self.provider_type)
        except ValueError:
            return ProviderType.CUSTOM


class ChatModel(Base):
    """A model name offered by a provider."""

    __tablename__ = "chat_models"

    id = Column(String, primary_key=True, default=new_id)
    provider_id = Column(String, ForeignKey("api_providers.id"), nullable=False)
    model_name = Column(String, nullable=False)
    display_name = Column(String)
    created_at = Column(DateTime, default=now, nullable=False)
    is_enabled = Column(Boolean, default=False, nullable=False)
    is_manually_added = Column(Boolean, default=False, nullable=False)

    provider = relationship("APIProvider", back_populates="models")

    __table_args__ = (Index("idx_chat_model_provider", "provider_id"),)


class Conversation(Base):
    """Conversation model."""

    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    created_at = Column(DateTime, default=now, nullable=False)
    updated_at = Column(DateTime, default=now, nullable=False)

    temperature = Column(Float, default=0.7, nullable=False)
    system_prompt = Column(Text, default="", nullable=False)
    streaming_enabled = Column(Boolean, default=True, nullable=False)
    selected_model_id = Column(String, ForeignKey("chat_models.id", ondelete="SET NULL"))
    context_reset_at = Column(DateTime)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )
    mcp_selections = relationship(
        "ConversationMCPSelection", back_populates="conversation", cascade="all, delete-orphan"
    )
    selected_model = relationship("ChatModel")

    __table_args__ = (Index("idx_conversation_updated", "updated_at"),)

    @property
    def sorted_messages(self) -> list["Message"]:
        return sorted(self.messages, key=lambda m: m.created_at)


class Message(Base):
    """Message model."""

    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    reasoning_content = Column(Text)
    created_at = Column(DateTime, default=now, nullable=False)
    is_streaming = Column(Boolean, default=False, nullable=False)

    # Tool invocation records carry all three; tool results carry the id only.
    tool_call_id = Column(String)
    tool_call_name = Column(String)
    tool_call_arguments = Column(Text)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("idx_message_conversation", "conversation_id"),
        Index("idx_message_created", "created_at"),
    )

    @property
    def is_tool_invocation(self) -> bool:
        return self.role == MessageRole.ASSISTANT.value and bool(self.tool_call_name)


class MemoryRecord(Base):
    """A remembered fact. A null conversation id means global scope."""

    __tablename__ = "memory_records"

    id = Column(String, primary_key=True, default=new_id)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=now, nullable=False)
    updated_at = Column(DateTime, default=now, nullable=False)
    conversation_id = Column(String)

    __table_args__ = (Index("idx_memory_conversation", "conversation_id"),)


class MemoryConfig(Base):
    """Singleton memory feature switches."""

    __tablename__ = "memory_config"

    id = Column(String, primary_key=True, default=new_id)
    is_memory_enabled = Column(Boolean, default=True, nullable=False)
    is_cross_chat_enabled = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=now, nullable=False)


class MCPServer(Base):
    """A remote MCP tool provider endpoint."""

    __tablename__ = "mcp_servers"

    id = Column(String, primary_key=True, default=new_id)
    identifier = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    transport_type = Column(String, nullable=False, default=MCPTransportType.STREAMABLE_HTTP.value)
    base_url = Column(String)
    event_url = Column(String)
    command_path = Column(String)
    is_enabled = Column(Boolean, default=True, nullable=False)
    custom_headers = Column(Text)
    created_at = Column(DateTime, default=now, nullable=False)
    updated_at = Column(DateTime, default=now, nullable=False)
    last_error_message = Column(Text)

    tools = relationship("MCPTool", back_populates="server", cascade="all, delete-orphan")
    selections = relationship(
        "ConversationMCPSelection", back_populates="server", cascade="all, delete-orphan"
    )

    @property
    def transport(self) -> MCPTransportType:
        try:
            return MCPTransportType(self.transport_type)
        except ValueError:
            return MCPTransportType.SSE

    @property
    def headers(self) -> dict[str, str]:
        if not self.custom_headers:
            return {}
        try:
            payload = json.loads(self.custom_headers)
        except ValueError:
            return {}
        return {str(k): str(v) for k, v in payload.items()} if isinstance(payload, dict) else {}

    @headers.setter
    def headers(self, value: dict[str, str]):
        self.custom_headers = json.dumps(value) if value else None


class MCPTool(Base):
    """A tool reported by an MCP server, refreshed by sync."""

    __tablename__ = "mcp_tools"

    id = Column(String, primary_key=True, default=new_id)
    server_id = Column(String, ForeignKey("mcp_servers.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    schema_json = Column(Text, nullable=False, default="")
    is_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=now, nullable=False)
    updated_at = Column(DateTime, default=now, nullable=False)

    server = relationship("MCPServer", back_populates="tools")

    __table_args__ = (Index("idx_mcp_tool_server", "server_id"),)


class ConversationMCPSelection(Base):
    """Marks an MCP server's tools as exposed to a conversation."""

    __tablename__ = "conversation_mcp_selections"

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    server_id = Column(String, ForeignKey("mcp_servers.id"), nullable=False)
    is_pinned = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=now, nullable=False)
    updated_at = Column(DateTime, default=now, nullable=False)

    conversation = relationship("Conversation", back_populates="mcp_selections")
    server = relationship("MCPServer", back_populates="selections")


def init_database(db_url: str = "sqlite:///cogitap.db"):
    """Initialize the database.

    Returns:
        Tuple of (engine, session factory)
    """
    engine = create_engine(db_url, echo=False)
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False)
    return engine, Session
