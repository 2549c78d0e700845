"""Tests for MCP manager and client functionality."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from cogitap.core.models import (
    ConversationMCPSelection,
    MCPServer,
    MCPTool,
    MCPTransportType,
)
from cogitap.mcp import (
    DEFAULT_SCHEMA_JSON,
    DEFAULT_TOOL_DESCRIPTION,
    ConnectionState,
    InvalidConfigurationError,
    MCPConnectionStatus,
    MCPHTTPError,
    MCPJSONRPCError,
    MCPServerConfig,
    MCPToolIdentifier,
    ProtocolViolationError,
    TransportUnavailableError,
)
from cogitap.mcp.client import MCPClient, stringify_result
from cogitap.mcp.manager import MCPManager
from cogitap.mcp.registry import MCPToolRegistry
from cogitap.mcp.transport import (
    HTTPJSONRPCTransport,
    LocalProcessTransport,
    create_transport,
    resolve_endpoint,
)

SERVER_URL = "https://mcp.example.com/rpc"


def rpc_handler(results: dict, calls: list | None = None):
    """Answer JSON-RPC calls from ``results`` keyed by method.

    A value that is an ``httpx.Response`` is returned as-is.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if calls is not None:
            calls.append((request, payload))
        result = results[payload["method"]]
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    return handler


def server_config(**overrides) -> MCPServerConfig:
    values = {"id": "srv-1", "display_name": "Search", "base_url": SERVER_URL}
    values.update(overrides)
    return MCPServerConfig(**values)


@pytest.mark.unit
class TestEndpointResolution:
    """Test picking the JSON-RPC endpoint."""

    def test_absolute_command_path(self):
        config = server_config(command_path="https://other.example.com/jsonrpc")
        assert resolve_endpoint(config) == "https://other.example.com/jsonrpc"

    def test_relative_command_path(self):
        config = server_config(base_url="https://mcp.example.com/api/", command_path="rpc")
        assert resolve_endpoint(config) == "https://mcp.example.com/api/rpc"

    def test_base_url(self):
        assert resolve_endpoint(server_config()) == SERVER_URL

    def test_missing_url(self):
        with pytest.raises(InvalidConfigurationError):
            resolve_endpoint(server_config(base_url=None))

    def test_transport_factory(self):
        assert isinstance(create_transport(server_config()), HTTPJSONRPCTransport)
        assert isinstance(
            create_transport(server_config(transport_type=MCPTransportType.SSE)),
            HTTPJSONRPCTransport,
        )
        assert isinstance(
            create_transport(server_config(transport_type=MCPTransportType.LOCAL_PROCESS)),
            LocalProcessTransport,
        )


@pytest.mark.unit
class TestMCPClient:
    """Test the JSON-RPC client."""

    @pytest.mark.asyncio
    async def test_list_tools_normalizes_shapes(self, make_http_client):
        tools = [
            {"name": "search", "description": "Web search", "inputSchema": {"type": "object", "b": 1, "a": 2}},
            {"name": "fetch", "input_schema": '{"type": "object"}'},
            {"description": "nameless"},
        ]
        for result in ({"tools": tools}, {"items": tools}, tools):
            async with make_http_client(rpc_handler({"tools/list": result})) as http_client:
                client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
                descriptors = await client.list_tools()

            assert [d.tool_name for d in descriptors] == ["search", "fetch"]
            search, fetch = descriptors
            assert search.description == "Web search"
            assert search.json_schema == '{"a": 2, "b": 1, "type": "object"}'
            assert search.qualified_name == "mcp::srv-1::search"
            assert fetch.description == DEFAULT_TOOL_DESCRIPTION
            assert fetch.schema_dictionary == {"type": "object"}

    @pytest.mark.asyncio
    async def test_list_tools_default_schema(self, make_http_client):
        handler = rpc_handler({"tools/list": {"tools": [{"name": "ping"}]}})
        async with make_http_client(handler) as http_client:
            client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
            [descriptor] = await client.list_tools()

        assert descriptor.json_schema == DEFAULT_SCHEMA_JSON
        assert descriptor.schema_dictionary == {
            "type": "object",
            "properties": {},
            "additionalProperties": True,
        }

    @pytest.mark.asyncio
    async def test_list_tools_unexpected_result(self, make_http_client):
        async with make_http_client(rpc_handler({"tools/list": "nope"})) as http_client:
            client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
            with pytest.raises(ProtocolViolationError):
                await client.list_tools()

    @pytest.mark.asyncio
    async def test_request_envelope_and_headers(self, make_http_client):
        calls = []
        config = server_config(headers={"X-Token": "secret"})
        async with make_http_client(rpc_handler({"tools/call": "ok"}, calls)) as http_client:
            client = MCPClient(config, HTTPJSONRPCTransport(config, http_client))
            assert await client.invoke_tool("search", {"q": "cats"}) == "ok"

        request, payload = calls[0]
        assert str(request.url) == SERVER_URL
        assert request.headers["X-Token"] == "secret"
        assert request.headers["Accept"] == "application/json"
        assert payload["jsonrpc"] == "2.0"
        assert payload["id"]
        assert payload["method"] == "tools/call"
        assert payload["params"] == {"name": "search", "arguments": {"q": "cats"}}

    @pytest.mark.asyncio
    async def test_json_rpc_error(self, make_http_client):
        error = httpx.Response(200, json={"jsonrpc": "2.0", "id": "1", "error": {"code": -32601, "message": "Method not found"}})
        async with make_http_client(rpc_handler({"tools/list": error})) as http_client:
            client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
            with pytest.raises(MCPJSONRPCError) as exc_info:
                await client.list_tools()

        assert exc_info.value.code == -32601
        assert str(exc_info.value) == "JSON-RPC(-32601): Method not found"

    @pytest.mark.asyncio
    async def test_json_rpc_error_default_code(self, make_http_client):
        error = httpx.Response(200, json={"error": {"message": "boom"}})
        async with make_http_client(rpc_handler({"tools/list": error})) as http_client:
            client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
            with pytest.raises(MCPJSONRPCError) as exc_info:
                await client.list_tools()

        assert exc_info.value.code == -32000

    @pytest.mark.asyncio
    async def test_http_error(self, make_http_client):
        error = httpx.Response(503, text="x" * 300)
        async with make_http_client(rpc_handler({"tools/list": error})) as http_client:
            client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
            with pytest.raises(MCPHTTPError) as exc_info:
                await client.list_tools()

        assert exc_info.value.status_code == 503
        assert str(exc_info.value) == "Server returned status 503: " + "x" * 140

    @pytest.mark.asyncio
    async def test_http_error_with_rpc_body(self, make_http_client):
        error = httpx.Response(400, json={"error": {"message": "bad params"}})
        async with make_http_client(rpc_handler({"tools/list": error})) as http_client:
            client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
            with pytest.raises(MCPJSONRPCError) as exc_info:
                await client.list_tools()

        assert exc_info.value.code == 400

    @pytest.mark.asyncio
    async def test_missing_result(self, make_http_client):
        empty = httpx.Response(200, json={"jsonrpc": "2.0", "id": "1"})
        async with make_http_client(rpc_handler({"tools/list": empty})) as http_client:
            client = MCPClient(server_config(), HTTPJSONRPCTransport(server_config(), http_client))
            with pytest.raises(ProtocolViolationError):
                await client.list_tools()

    def test_stringify_result(self):
        assert stringify_result("text") == "text"
        assert stringify_result(42) == "42"
        assert stringify_result(1.5) == "1.5"
        assert stringify_result(None) == ""
        assert stringify_result({"a": [1]}) == json.dumps({"a": [1]}, indent=2)
        assert stringify_result(True) == "True"

    @pytest.mark.asyncio
    async def test_connect_status(self):
        transport = AsyncMock()
        statuses = []
        client = MCPClient(server_config(enabled_tool_count=3), transport, statuses.append)

        await client.connect()

        assert [s.state for s in statuses] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert client.status == MCPConnectionStatus.connected(3)

    @pytest.mark.asyncio
    async def test_connect_is_idempotent_while_connecting(self):
        transport = AsyncMock()
        client = MCPClient(server_config(), transport)
        client._status = MCPConnectionStatus.connecting()

        await client.connect()

        transport.connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_failure_sets_error(self):
        config = server_config(transport_type=MCPTransportType.LOCAL_PROCESS)
        client = MCPClient(config, create_transport(config))

        with pytest.raises(TransportUnavailableError):
            await client.connect()

        assert client.status.state == ConnectionState.ERROR
        assert client.status.message == "Transport is not supported"


@pytest.mark.unit
class TestMCPToolRegistry:
    def test_install_replaces_lookup(self):
        from cogitap.mcp import MCPRegisteredTool, MCPToolDescriptor

        def registered(name):
            descriptor = MCPToolDescriptor(
                identifier=MCPToolIdentifier("srv-1", name),
                tool_name=name,
                description="desc",
                json_schema='{"type": "object"}',
            )
            return MCPRegisteredTool(descriptor, "Search")

        registry = MCPToolRegistry()
        registry.install([registered("a")])
        functions = registry.install([registered("b")])

        assert [f.name for f in functions] == ["mcp::srv-1::b"]
        assert functions[0].description == "desc\n(Source: Search)"
        assert functions[0].parameters == {"type": "object"}
        assert registry.registered_tool("mcp::srv-1::a") is None
        assert registry.registered_tool("mcp::srv-1::b").descriptor.tool_name == "b"


@pytest.mark.unit
class TestMCPManager:
    """Test MCP manager functionality."""

    @pytest.fixture
    def server(self):
        server = MCPServer(identifier="search", display_name="Search", base_url=SERVER_URL)
        return server

    def _manager(self, http_client, test_config):
        return MCPManager(http_client=http_client, settings=test_config.mcp)

    @pytest.mark.asyncio
    async def test_add_server_syncs_tools(self, db_session, server, make_http_client, test_config):
        tools = {"tools": [{"name": "search"}, {"name": "fetch", "description": "Fetch a page"}]}
        async with make_http_client(rpc_handler({"tools/list": tools})) as http_client:
            manager = self._manager(http_client, test_config)
            statuses = []
            manager.add_listener(lambda server_id, status: statuses.append(status))

            assert await manager.add_server(db_session, server)

        assert {t.name for t in server.tools} == {"search", "fetch"}
        assert manager.connection_status(server.id) == MCPConnectionStatus.connected(2)
        assert statuses[-1] == MCPConnectionStatus.connected(2)
        assert server.last_error_message is None

    @pytest.mark.asyncio
    async def test_sync_tools_upserts_and_prunes(self, db_session, server, make_http_client, test_config):
        """Matching tools are updated, new ones added, missing ones deleted."""
        server.tools.append(MCPTool(name="keep", description="old", schema_json="{}"))
        server.tools.append(MCPTool(name="stale", description="gone", schema_json="{}"))
        db_session.add(server)
        db_session.commit()

        tools = {"tools": [{"name": "keep", "description": "new"}, {"name": "fresh"}]}
        async with make_http_client(rpc_handler({"tools/list": tools})) as http_client:
            manager = self._manager(http_client, test_config)
            await manager.refresh_servers(db_session)
            assert await manager.sync_tools(db_session, server.id)

        names = {t.name: t for t in db_session.query(MCPTool).all()}
        assert set(names) == {"keep", "fresh"}
        assert names["keep"].description == "new"
        assert names["keep"].schema_json == DEFAULT_SCHEMA_JSON

    @pytest.mark.asyncio
    async def test_sync_tools_records_rpc_error(self, db_session, server, make_http_client, test_config):
        error = httpx.Response(200, json={"error": {"code": -32601, "message": "Method not found"}})
        db_session.add(server)
        db_session.commit()

        async with make_http_client(rpc_handler({"tools/list": error})) as http_client:
            manager = self._manager(http_client, test_config)
            await manager.refresh_servers(db_session)
            assert not await manager.sync_tools(db_session, server.id)

        status = manager.connection_status(server.id)
        assert status.state == ConnectionState.ERROR
        assert status.message == "JSON-RPC(-32601): Method not found"
        assert server.last_error_message == "JSON-RPC(-32601): Method not found"

    @pytest.mark.asyncio
    async def test_sync_tools_records_http_error(self, db_session, server, make_http_client, test_config):
        async with make_http_client(rpc_handler({"tools/list": httpx.Response(503)})) as http_client:
            manager = self._manager(http_client, test_config)
            assert not await manager.add_server(db_session, server)

        assert manager.connection_status(server.id).message == "Server returned status 503"
        assert server.last_error_message == "Server returned status 503"

    @pytest.mark.asyncio
    async def test_sync_unknown_server(self, db_session, mcp_manager):
        assert not await mcp_manager.sync_tools(db_session, "missing")

    @pytest.mark.asyncio
    async def test_refresh_drops_disabled_servers(self, db_session, server, mcp_manager):
        db_session.add(server)
        db_session.commit()
        await mcp_manager.refresh_servers(db_session)
        assert server.id in mcp_manager.clients

        server.is_enabled = False
        db_session.commit()
        await mcp_manager.refresh_servers(db_session)

        assert server.id not in mcp_manager.clients
        assert mcp_manager.connection_status(server.id) == MCPConnectionStatus.idle()

    @pytest.mark.asyncio
    async def test_remove_server(self, db_session, server, mcp_manager):
        server.tools.append(MCPTool(name="keep", description="", schema_json=""))
        db_session.add(server)
        db_session.commit()
        await mcp_manager.refresh_servers(db_session)

        assert await mcp_manager.remove_server(db_session, server.id)
        assert db_session.query(MCPTool).count() == 0
        assert server.id not in mcp_manager.clients
        assert not await mcp_manager.remove_server(db_session, server.id)

    def test_registered_tools_for_conversation(self, db_session, server, mcp_manager, make_conversation):
        server.tools.append(MCPTool(name="search", description="Web search", schema_json=""))
        server.tools.append(MCPTool(name="off", description="", schema_json="", is_enabled=False))
        conversation = make_conversation()
        conversation.mcp_selections.append(ConversationMCPSelection(server=server))
        db_session.commit()

        [tool] = mcp_manager.registered_tools(conversation)

        function = tool.function_tool
        assert function.name == f"mcp::{server.id}::search"
        assert function.description == "Web search\n(Source: Search)"
        assert function.parameters["additionalProperties"] is True

    def test_registered_tools_skip_disabled_server(self, db_session, server, mcp_manager, make_conversation):
        server.is_enabled = False
        server.tools.append(MCPTool(name="search", description="", schema_json=""))
        conversation = make_conversation()
        conversation.mcp_selections.append(ConversationMCPSelection(server=server))
        db_session.commit()

        assert mcp_manager.registered_tools(conversation) == []

    @pytest.mark.asyncio
    async def test_invoke_tool(self, db_session, server, make_http_client, test_config):
        calls = []
        db_session.add(server)
        db_session.commit()
        handler = rpc_handler({"tools/call": {"answer": 42}}, calls)

        async with make_http_client(handler) as http_client:
            manager = self._manager(http_client, test_config)
            await manager.refresh_servers(db_session)
            identifier = MCPToolIdentifier(server.id, "search")
            result = await manager.invoke_tool(identifier, '{"q": "cats"}')

            with pytest.raises(ProtocolViolationError):
                await manager.invoke_tool(identifier, "[1]")

        assert json.loads(result) == {"answer": 42}
        assert calls[0][1]["params"] == {"name": "search", "arguments": {"q": "cats"}}

    @pytest.mark.asyncio
    async def test_invoke_tool_unknown_server(self, mcp_manager):
        with pytest.raises(InvalidConfigurationError):
            await mcp_manager.invoke_tool(MCPToolIdentifier("nope", "search"), "{}")

    @pytest.mark.asyncio
    async def test_disconnect_all(self, db_session, server, mcp_manager):
        db_session.add(server)
        db_session.commit()
        await mcp_manager.refresh_servers(db_session)

        await mcp_manager.disconnect_all()

        assert mcp_manager.clients == {}
        assert mcp_manager.statuses == {}
