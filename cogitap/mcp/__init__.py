"""Model Context Protocol (MCP) integration for Cogitap.

Remote tool servers are reached over JSON-RPC 2.0. Their tools are exposed to
the model under qualified names (``mcp::<server id>::<tool name>``) so they
cannot collide with the local memory tools.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cogitap.core.models import MCPServer, MCPTransportType
from cogitap.providers import FunctionTool

DEFAULT_SCHEMA_JSON = json.dumps(
    {"type": "object", "properties": {}, "additionalProperties": True}, indent=2
)
DEFAULT_TOOL_DESCRIPTION = "No description provided."

QUALIFIED_NAME_PREFIX = "mcp::"


class ConnectionState(str, Enum):
    """Connection states of an MCP client."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class MCPConnectionStatus:
    """Connection state plus its payload (tool count or error message)."""

    state: ConnectionState = ConnectionState.IDLE
    tool_count: int = 0
    message: str | None = None

    @classmethod
    def idle(cls) -> "MCPConnectionStatus":
        return cls()

    @classmethod
    def connecting(cls) -> "MCPConnectionStatus":
        return cls(state=ConnectionState.CONNECTING)

    @classmethod
    def connected(cls, tool_count: int) -> "MCPConnectionStatus":
        return cls(state=ConnectionState.CONNECTED, tool_count=tool_count)

    @classmethod
    def error(cls, message: str) -> "MCPConnectionStatus":
        return cls(state=ConnectionState.ERROR, message=message)


# Errors


class MCPError(Exception):
    """Base class for MCP failures."""

    default_message = "MCP error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class InvalidConfigurationError(MCPError):
    default_message = "Invalid MCP configuration"


class TransportUnavailableError(MCPError):
    default_message = "Transport is not supported"


class ProtocolViolationError(MCPError):
    default_message = "Server returned invalid protocol data"


class DisconnectedError(MCPError):
    default_message = "Server connection lost"


class MCPNotImplementedError(MCPError):
    default_message = "Not implemented"


class MCPJSONRPCError(MCPError):
    """A JSON-RPC ``error`` object returned by the server."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.rpc_message = message
        super().__init__(f"JSON-RPC({code}): {message}")


class MCPHTTPError(MCPError):
    """A non-2xx HTTP status without a JSON-RPC error body."""

    BODY_LIMIT = 140

    def __init__(self, status_code: int, body: str | None = None):
        self.status_code = status_code
        self.body = body
        text = "No response from server" if status_code == -1 else f"Server returned status {status_code}"
        snippet = (body or "").strip()
        if snippet:
            text += f": {snippet[: self.BODY_LIMIT]}"
        super().__init__(text)


# Tool descriptors


@dataclass(frozen=True)
class MCPToolIdentifier:
    server_id: str
    tool_name: str


@dataclass(frozen=True)
class MCPToolDescriptor:
    """A tool as reported by a server, schema kept as JSON text."""

    identifier: MCPToolIdentifier
    tool_name: str
    description: str
    json_schema: str

    @property
    def qualified_name(self) -> str:
        return f"{QUALIFIED_NAME_PREFIX}{self.identifier.server_id}::{self.tool_name}"

    @property
    def schema_dictionary(self) -> dict[str, Any]:
        try:
            schema = json.loads(self.json_schema)
        except ValueError:
            return {}
        return schema if isinstance(schema, dict) else {}


@dataclass(frozen=True)
class MCPRegisteredTool:
    """A descriptor bound to the display name of the server providing it."""

    descriptor: MCPToolDescriptor
    server_identifier: str

    @property
    def function_tool(self) -> FunctionTool:
        return FunctionTool(
            name=self.descriptor.qualified_name,
            description=f"{self.descriptor.description}\n(Source: {self.server_identifier})",
            parameters=self.descriptor.schema_dictionary,
        )


@dataclass(frozen=True)
class MCPServerConfig:
    """Immutable snapshot of an MCPServer row used by clients and transports."""

    id: str
    display_name: str
    transport_type: MCPTransportType = MCPTransportType.STREAMABLE_HTTP
    base_url: str | None = None
    event_url: str | None = None
    command_path: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    enabled_tool_count: int = field(default=0, compare=False)

    @classmethod
    def from_model(cls, server: MCPServer) -> "MCPServerConfig":
        return cls(
            id=server.id,
            display_name=server.display_name,
            transport_type=server.transport,
            base_url=server.base_url,
            event_url=server.event_url,
            command_path=server.command_path,
            headers=server.headers,
            enabled_tool_count=sum(1 for t in server.tools if t.is_enabled),
        )
