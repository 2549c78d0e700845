"""Transports carrying JSON-RPC envelopes to MCP servers."""

import json
from typing import Any, Protocol

import httpx

from cogitap.core.models import MCPTransportType
from cogitap.mcp import (
    DisconnectedError,
    InvalidConfigurationError,
    MCPServerConfig,
    TransportUnavailableError,
)
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)


class MCPTransport(Protocol):
    """Moves one JSON-RPC request to a server and returns the raw reply."""

    server: MCPServerConfig

    async def connect(self):
        ...

    async def disconnect(self):
        ...

    async def send_request(self, payload: dict[str, Any]) -> tuple[int, bytes]:
        """Send an envelope; returns the HTTP status code and body."""
        ...


def resolve_endpoint(server: MCPServerConfig) -> str:
    """Pick the JSON-RPC endpoint for ``server``.

    An absolute command path wins, then a command path relative to the base
    URL, then the base URL itself.

    Raises:
        InvalidConfigurationError: No usable URL is configured
    """
    command = (server.command_path or "").strip()
    base = (server.base_url or "").strip()

    try:
        if command:
            url = httpx.URL(command)
            if url.scheme:
                return str(url)
            if base:
                return str(httpx.URL(base).join(command))
        if base and httpx.URL(base).scheme:
            return base
    except httpx.InvalidURL as e:
        raise InvalidConfigurationError(f"Invalid MCP endpoint: {e}") from e

    raise InvalidConfigurationError()


class HTTPJSONRPCTransport:
    """POSTs JSON-RPC envelopes over HTTP.

    Serves both the streamable HTTP and SSE server kinds; replies are read as
    a single JSON body.
    """

    def __init__(
        self,
        server: MCPServerConfig,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.server = server
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    async def connect(self):
        resolve_endpoint(self.server)

    async def disconnect(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send_request(self, payload: dict[str, Any]) -> tuple[int, bytes]:
        url = resolve_endpoint(self.server)
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self.server.headers)

        try:
            response = await self._get_client().post(
                url, content=json.dumps(payload).encode("utf-8"), headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"MCP request to {self.server.display_name} failed: {e}")
            raise DisconnectedError(f"Server connection lost: {e}") from e

        return response.status_code, response.content


class LocalProcessTransport:
    """Placeholder for servers launched as local processes."""

    def __init__(self, server: MCPServerConfig):
        self.server = server

    async def connect(self):
        raise TransportUnavailableError()

    async def disconnect(self):
        pass

    async def send_request(self, payload: dict[str, Any]) -> tuple[int, bytes]:
        raise TransportUnavailableError()


def create_transport(
    server: MCPServerConfig,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> MCPTransport:
    if server.transport_type == MCPTransportType.LOCAL_PROCESS:
        return LocalProcessTransport(server)
    return HTTPJSONRPCTransport(server, http_client, timeout)
