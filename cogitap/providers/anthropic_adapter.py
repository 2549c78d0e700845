"""Anthropic Messages API adapter."""

from collections.abc import Mapping
from typing import Any

import httpx

from cogitap.config.schema import ProviderConfig
from cogitap.providers import (
    ProviderSettings,
    StreamChunk,
    UnifiedChatRequest,
    UnifiedChatResponse,
)
from cogitap.providers.errors import DecodingError
from cogitap.providers.http import build_request, parse_json_body, send_request
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

ANTHROPIC_BASE = "https://api.anthropic.com/v1"

# The models endpoint is not reliably available to every key, so listing
# falls back to these when the body cannot be read.
DEFAULT_MODELS = [
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
]


class AnthropicAdapter:
    """Adapter for Anthropic's Messages API.

    Tool calling and reasoning are not modelled for this provider.
    """

    supports_tool_calling = False

    def __init__(
        self,
        provider: ProviderSettings,
        http_client: httpx.AsyncClient | None = None,
        settings: ProviderConfig | None = None,
    ):
        self.provider = provider
        self.http_client = http_client
        self.settings = settings or ProviderConfig()

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.provider.api_key,
            "anthropic-version": self.settings.anthropic_version,
        }

    def convert_request(self, request: UnifiedChatRequest) -> httpx.Request:
        system_prompt = None
        messages: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                system_prompt = message.content
                continue
            if message.role == "assistant" and message.tool_calls and not message.content:
                continue
            role = "assistant" if message.role == "assistant" else "user"
            messages.append({"role": role, "content": message.content})

        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": self.settings.anthropic_max_tokens,
            "temperature": request.temperature,
            "stream": request.stream,
        }
        if system_prompt:
            body["system"] = system_prompt

        return build_request(
            "POST", f"{ANTHROPIC_BASE}/messages", headers=self._headers(), body=body
        )

    def parse_stream_chunk(self, line: str) -> StreamChunk | None:
        # "event:" lines repeat the type carried in the data payload
        if not line or not line.startswith("data:"):
            return None

        data = line[len("data:"):].strip()
        if not data:
            return None
        payload = parse_json_body(data)
        if payload is None:
            logger.debug(f"Skipping unparsable stream payload: {data[:80]}")
            return None
        if not isinstance(payload, Mapping):
            return None

        event_type = payload.get("type")
        if event_type == "error":
            error = payload.get("error")
            message = error.get("message") if isinstance(error, Mapping) else error
            raise DecodingError(f"provider returned an error: {message}")
        if event_type == "message_stop":
            return StreamChunk(is_finished=True)
        if event_type == "message_delta":
            delta = payload.get("delta")
            stop_reason = delta.get("stop_reason") if isinstance(delta, Mapping) else None
            return StreamChunk(finish_reason=stop_reason) if stop_reason else None
        if event_type == "content_block_delta":
            delta = payload.get("delta")
            text = delta.get("text") if isinstance(delta, Mapping) else None
            return StreamChunk(content=text) if isinstance(text, str) else None
        return None

    def parse_response(self, body: bytes) -> UnifiedChatResponse:
        payload = parse_json_body(body)
        if not isinstance(payload, Mapping):
            raise DecodingError("response is not a JSON object")
        if payload.get("type") == "error":
            error = payload.get("error")
            message = error.get("message") if isinstance(error, Mapping) else error
            raise DecodingError(f"provider returned an error: {message}")

        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise DecodingError("response has no content blocks")

        text = "".join(
            block["text"]
            for block in blocks
            if isinstance(block, Mapping)
            and block.get("type", "text") == "text"
            and isinstance(block.get("text"), str)
        )
        return UnifiedChatResponse(content=text, finish_reason=payload.get("stop_reason"))

    async def fetch_models(self) -> list[str]:
        request = build_request("GET", f"{ANTHROPIC_BASE}/models", headers=self._headers())
        if self.http_client is not None:
            response = await send_request(self.http_client, request)
        else:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                response = await send_request(client, request)

        payload = parse_json_body(response.content)
        models = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(models, list):
            logger.warning("Anthropic model list unreadable, using built-in list")
            return list(DEFAULT_MODELS)

        names = [m["id"] for m in models if isinstance(m, Mapping) and isinstance(m.get("id"), str)]
        return names or list(DEFAULT_MODELS)
