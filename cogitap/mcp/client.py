"""JSON-RPC client for a single MCP server."""

import json
import uuid
from collections.abc import Callable
from typing import Any

from cogitap.mcp import (
    DEFAULT_SCHEMA_JSON,
    DEFAULT_TOOL_DESCRIPTION,
    ConnectionState,
    MCPConnectionStatus,
    MCPError,
    MCPHTTPError,
    MCPJSONRPCError,
    MCPServerConfig,
    MCPToolDescriptor,
    MCPToolIdentifier,
    ProtocolViolationError,
)
from cogitap.mcp.transport import MCPTransport, create_transport
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_RPC_ERROR_CODE = -32000
UNKNOWN_ERROR_MESSAGE = "Unknown error"


def schema_json_string(schema: Any) -> str:
    """Serialise a tool schema, falling back to the permissive default."""
    if isinstance(schema, str) and schema.strip():
        return schema
    if isinstance(schema, dict | list):
        try:
            return json.dumps(schema, sort_keys=True, ensure_ascii=False)
        except (TypeError, ValueError):
            pass
    return DEFAULT_SCHEMA_JSON


def stringify_result(result: Any) -> str:
    """Render a tools/call result as text for the model."""
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, int | float) and not isinstance(result, bool):
        return str(result)
    if isinstance(result, dict | list):
        return json.dumps(result, indent=2, ensure_ascii=False)
    return str(result)


class MCPClient:
    """Talks JSON-RPC to one MCP server and tracks its connection status.

    Attributes:
        server: Snapshot of the server configuration
        transport: Carrier for the JSON-RPC envelopes
        status: Current connection status
    """

    def __init__(
        self,
        server: MCPServerConfig,
        transport: MCPTransport | None = None,
        on_status_change: Callable[[MCPConnectionStatus], None] | None = None,
    ):
        self.server = server
        self.transport = transport or create_transport(server)
        self.on_status_change = on_status_change
        self._status = MCPConnectionStatus.idle()

    @property
    def status(self) -> MCPConnectionStatus:
        return self._status

    def _set_status(self, status: MCPConnectionStatus):
        self._status = status
        if self.on_status_change:
            self.on_status_change(status)

    async def connect(self):
        """Validate the endpoint and mark the client connected.

        Does nothing while a connection attempt is already running.

        Raises:
            MCPError: The transport cannot reach the server
        """
        if self._status.state == ConnectionState.CONNECTING:
            return

        self._set_status(MCPConnectionStatus.connecting())
        try:
            await self.transport.connect()
        except MCPError as e:
            self._set_status(MCPConnectionStatus.error(str(e)))
            raise
        self._set_status(MCPConnectionStatus.connected(self.server.enabled_tool_count))
        logger.info(f"Connected to MCP server {self.server.display_name}")

    async def disconnect(self):
        self._set_status(MCPConnectionStatus.idle())
        await self.transport.disconnect()

    async def list_tools(self) -> list[MCPToolDescriptor]:
        """Fetch the server's tools via ``tools/list``.

        Accepts ``{"tools": [...]}``, ``{"items": [...]}`` or a bare array.
        Entries without a name are dropped.
        """
        result = await self._send_rpc("tools/list", {})
        if isinstance(result, dict):
            payloads = result.get("tools")
            if not isinstance(payloads, list):
                payloads = result.get("items")
            if not isinstance(payloads, list):
                payloads = []
        elif isinstance(result, list):
            payloads = result
        else:
            raise ProtocolViolationError()

        descriptors = []
        for payload in payloads:
            if not isinstance(payload, dict) or not isinstance(payload.get("name"), str):
                continue
            name = payload["name"]
            description = payload.get("description")
            if not isinstance(description, str):
                description = DEFAULT_TOOL_DESCRIPTION
            schema = payload.get("input_schema", payload.get("inputSchema", payload.get("schema")))
            descriptors.append(
                MCPToolDescriptor(
                    identifier=MCPToolIdentifier(server_id=self.server.id, tool_name=name),
                    tool_name=name,
                    description=description,
                    json_schema=schema_json_string(schema),
                )
            )

        logger.debug(f"Server {self.server.display_name} listed {len(descriptors)} tools")
        return descriptors

    async def invoke_tool(self, name: str, arguments: dict[str, Any]) -> str:
        result = await self._send_rpc("tools/call", {"name": name, "arguments": arguments})
        return stringify_result(result)

    async def _send_rpc(self, method: str, params: dict[str, Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params,
        }
        status_code, body = await self.transport.send_request(payload)

        try:
            envelope = json.loads(body) if body else None
        except ValueError:
            envelope = None

        if not 200 <= status_code < 300:
            error = envelope.get("error") if isinstance(envelope, dict) else None
            if isinstance(error, dict):
                raise self._rpc_error(error, status_code)
            raise MCPHTTPError(status_code, body.decode("utf-8", errors="replace") if body else None)

        if not isinstance(envelope, dict):
            raise ProtocolViolationError()
        error = envelope.get("error")
        if isinstance(error, dict):
            raise self._rpc_error(error, DEFAULT_RPC_ERROR_CODE)
        if "result" not in envelope:
            raise ProtocolViolationError()
        return envelope["result"]

    @staticmethod
    def _rpc_error(error: dict[str, Any], default_code: int) -> MCPJSONRPCError:
        code = error.get("code")
        message = error.get("message")
        return MCPJSONRPCError(
            code=code if isinstance(code, int) else default_code,
            message=message if isinstance(message, str) else UNKNOWN_ERROR_MESSAGE,
        )
