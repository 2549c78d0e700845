"""MCP connection and tool management.

The manager keeps one MCPClient per enabled server row, mirrors their
connection status, keeps the persisted tool list in step with what servers
report, and routes tool invocations from the chat engine.
"""

import json
from collections.abc import Callable

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cogitap.config.schema import MCPConfig
from cogitap.core.models import Conversation, MCPServer, MCPTool, now
from cogitap.mcp import (
    DEFAULT_SCHEMA_JSON,
    InvalidConfigurationError,
    MCPConnectionStatus,
    MCPError,
    MCPRegisteredTool,
    MCPServerConfig,
    MCPToolDescriptor,
    MCPToolIdentifier,
    ProtocolViolationError,
)
from cogitap.mcp.client import MCPClient
from cogitap.mcp.transport import create_transport
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

StatusListener = Callable[[str, MCPConnectionStatus], None]


def normalized_schema_json(raw: str | None) -> str:
    trimmed = (raw or "").strip()
    return trimmed or DEFAULT_SCHEMA_JSON


class MCPManager:
    """Manages MCP server clients, tool sync and tool execution."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        settings: MCPConfig | None = None,
    ):
        """Initialize MCP manager.

        Args:
            http_client: Shared HTTP client for all transports; each transport
                opens its own when omitted
            settings: MCP section of the application config
        """
        self.http_client = http_client
        self.settings = settings or MCPConfig()
        self.clients: dict[str, MCPClient] = {}
        self.statuses: dict[str, MCPConnectionStatus] = {}
        self._listeners: list[StatusListener] = []

    # Status

    def add_listener(self, listener: StatusListener):
        """Register a callback invoked as ``listener(server_id, status)``."""
        self._listeners.append(listener)

    def _set_status(self, server_id: str, status: MCPConnectionStatus):
        self.statuses[server_id] = status
        for listener in list(self._listeners):
            try:
                listener(server_id, status)
            except Exception as e:
                logger.error(f"MCP status listener failed: {e}")

    def connection_status(self, server_id: str) -> MCPConnectionStatus:
        return self.statuses.get(server_id, MCPConnectionStatus.idle())

    # Clients

    def _create_client(self, config: MCPServerConfig) -> MCPClient:
        transport = create_transport(config, self.http_client, self.settings.request_timeout)
        return MCPClient(
            config,
            transport,
            on_status_change=lambda status: self._set_status(config.id, status),
        )

    async def refresh_servers(self, session: Session):
        """Bring the client set in line with the server rows.

        Clients of deleted or disabled servers are dropped; enabled servers
        get a client, rebuilt if their connection settings changed.
        """
        servers = session.query(MCPServer).all()
        enabled = {server.id: server for server in servers if server.is_enabled}

        for server_id in set(self.clients) - set(enabled):
            client = self.clients.pop(server_id)
            await client.disconnect()
            self._set_status(server_id, MCPConnectionStatus.idle())

        for server_id, server in enabled.items():
            config = MCPServerConfig.from_model(server)
            client = self.clients.get(server_id)
            if client is not None and client.server == config:
                self.statuses[server_id] = client.status
                continue
            if client is not None:
                await client.disconnect()
            self.clients[server_id] = self._create_client(config)
            self.statuses.setdefault(server_id, MCPConnectionStatus.idle())

        logger.debug(f"Tracking {len(self.clients)} MCP servers")

    async def add_server(self, session: Session, server: MCPServer) -> bool:
        """Persist a server and, when enabled, sync its tools.

        Returns:
            True if the server was stored and (when enabled) synced
        """
        try:
            session.add(server)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error adding MCP server '{server.display_name}': {e}")
            return False

        logger.info(f"Added MCP server '{server.display_name}'")
        await self.refresh_servers(session)
        if not server.is_enabled:
            return True
        return await self.sync_tools(session, server.id)

    async def remove_server(self, session: Session, server_id: str) -> bool:
        """Delete a server with its tools and selections."""
        server = session.get(MCPServer, server_id)
        if server is None:
            logger.warning(f"MCP server '{server_id}' not found")
            return False

        try:
            session.delete(server)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error removing MCP server '{server_id}': {e}")
            return False

        client = self.clients.pop(server_id, None)
        if client is not None:
            await client.disconnect()
        self.statuses.pop(server_id, None)
        logger.info(f"Removed MCP server '{server_id}'")
        return True

    async def disconnect_all(self):
        for client in list(self.clients.values()):
            await client.disconnect()
        self.clients.clear()
        self.statuses.clear()

    # Tools

    def registered_tools(self, conversation: Conversation) -> list[MCPRegisteredTool]:
        """Enabled tools of the enabled servers selected for ``conversation``."""
        registered = []
        selections = sorted(conversation.mcp_selections, key=lambda s: s.created_at)
        for selection in selections:
            server = selection.server
            if server is None or not server.is_enabled:
                continue
            for tool in server.tools:
                if not tool.is_enabled:
                    continue
                descriptor = MCPToolDescriptor(
                    identifier=MCPToolIdentifier(server_id=server.id, tool_name=tool.name),
                    tool_name=tool.name,
                    description=tool.description,
                    json_schema=normalized_schema_json(tool.schema_json),
                )
                registered.append(
                    MCPRegisteredTool(descriptor=descriptor, server_identifier=server.display_name)
                )
        return registered

    async def sync_tools(self, session: Session, server_id: str) -> bool:
        """Fetch a server's tools and upsert/prune the persisted list by name.

        Failures are recorded as the server's error status and
        ``last_error_message``.

        Returns:
            True if the tool list was refreshed
        """
        server = session.get(MCPServer, server_id)
        if server is None:
            logger.warning(f"MCP server '{server_id}' not found")
            return False

        client = self.clients.get(server_id)
        if client is None and server.is_enabled:
            client = self._create_client(MCPServerConfig.from_model(server))
            self.clients[server_id] = client

        self._set_status(server_id, MCPConnectionStatus.connecting())
        try:
            if client is None:
                raise InvalidConfigurationError("MCP server is disabled")
            await client.connect()
            descriptors = await client.list_tools()
            self._update_tools(session, server, descriptors)
        except (MCPError, SQLAlchemyError) as e:
            session.rollback()
            message = str(e)
            logger.error(f"Tool sync failed for '{server.display_name}': {message}")
            self._set_status(server_id, MCPConnectionStatus.error(message))
            self._record_error(session, server, message)
            return False

        self._set_status(server_id, MCPConnectionStatus.connected(len(descriptors)))
        logger.info(f"Synced {len(descriptors)} tools from '{server.display_name}'")
        return True

    def _update_tools(
        self, session: Session, server: MCPServer, descriptors: list[MCPToolDescriptor]
    ):
        existing = {tool.name: tool for tool in server.tools}
        timestamp = now()

        for descriptor in descriptors:
            tool = existing.pop(descriptor.tool_name, None)
            if tool is not None:
                tool.description = descriptor.description
                tool.schema_json = descriptor.json_schema
                tool.updated_at = timestamp
            else:
                server.tools.append(
                    MCPTool(
                        name=descriptor.tool_name,
                        description=descriptor.description,
                        schema_json=descriptor.json_schema,
                        is_enabled=True,
                    )
                )

        for obsolete in existing.values():
            server.tools.remove(obsolete)

        server.last_error_message = None
        server.updated_at = timestamp
        session.commit()

    @staticmethod
    def _record_error(session: Session, server: MCPServer, message: str):
        try:
            server.last_error_message = message
            server.updated_at = now()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Could not record MCP error for '{server.display_name}': {e}")

    async def invoke_tool(self, identifier: MCPToolIdentifier, arguments_json: str) -> str:
        """Call a remote tool with JSON-encoded arguments.

        Raises:
            InvalidConfigurationError: The server has no client
            ProtocolViolationError: Arguments are not a JSON object
            MCPError: The call itself failed
        """
        client = self.clients.get(identifier.server_id)
        if client is None:
            raise InvalidConfigurationError()

        if arguments_json and arguments_json.strip():
            try:
                arguments = json.loads(arguments_json)
            except ValueError as e:
                raise ProtocolViolationError("Tool arguments are not valid JSON") from e
            if not isinstance(arguments, dict):
                raise ProtocolViolationError("Tool arguments must be a JSON object")
        else:
            arguments = {}

        logger.debug(f"Invoking '{identifier.tool_name}' on server {identifier.server_id}")
        return await client.invoke_tool(identifier.tool_name, arguments)
