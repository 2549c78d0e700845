"""HTTP helpers shared by adapters and the chat engine."""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from cogitap.providers.errors import EncodingError, InvalidURLError, NetworkError
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

_ERROR_BODY_LIMIT = 200


def encode_json(body: dict[str, Any]) -> bytes:
    """Serialise a request body, mapping failures to EncodingError."""
    try:
        return json.dumps(body, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Cannot encode request body: {e}") from e


def build_request(
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    params: dict[str, str] | None = None,
    body: dict[str, Any] | None = None,
) -> httpx.Request:
    """Build an httpx request, mapping malformed URLs to InvalidURLError."""
    if not url or "://" not in url:
        raise InvalidURLError(f"Invalid URL: {url!r}")

    content = encode_json(body) if body is not None else None
    request_headers = dict(headers or {})
    if content is not None:
        request_headers.setdefault("Content-Type", "application/json")

    try:
        return httpx.Request(method, url, headers=request_headers, params=params, content=content)
    except (httpx.InvalidURL, ValueError) as e:
        raise InvalidURLError(f"Invalid URL {url!r}: {e}") from e


def _status_error(response: httpx.Response, body: bytes) -> NetworkError:
    snippet = body.decode("utf-8", errors="replace").strip()[:_ERROR_BODY_LIMIT]
    detail = f"HTTP {response.status_code}"
    if snippet:
        detail += f": {snippet}"
    return NetworkError(detail)


async def send_request(client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
    """Send a request and return the buffered response.

    Raises:
        NetworkError: Transport failure or non-2xx status
    """
    try:
        response = await client.send(request)
    except httpx.HTTPError as e:
        logger.error(f"Request to {request.url.host} failed: {e}")
        raise NetworkError(str(e) or type(e).__name__) from e

    if not response.is_success:
        raise _status_error(response, response.content)
    return response


@asynccontextmanager
async def open_line_stream(
    client: httpx.AsyncClient, request: httpx.Request
) -> AsyncIterator[AsyncIterator[str]]:
    """Open a streamed request and yield an iterator over its lines.

    The response is closed when the context exits, including on cancellation.

    Raises:
        NetworkError: Transport failure or non-2xx status
    """
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        logger.error(f"Stream to {request.url.host} failed to open: {e}")
        raise NetworkError(str(e) or type(e).__name__) from e

    try:
        if not response.is_success:
            body = await response.aread()
            raise _status_error(response, body)
        yield _iter_lines(response)
    finally:
        await response.aclose()


async def _iter_lines(response: httpx.Response) -> AsyncIterator[str]:
    try:
        async for line in response.aiter_lines():
            yield line
    except httpx.HTTPError as e:
        raise NetworkError(str(e) or type(e).__name__) from e


def parse_json_body(body: bytes | str) -> Any:
    """Decode a JSON document; returns None when it is not valid JSON."""
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        return None
