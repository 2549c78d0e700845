"""
OpenAI-style adapter.

Serves the first-party OpenAI API, OpenRouter and any custom endpoint that
speaks the Chat Completions wire format. This is the only adapter that models
tool calling and reasoning deltas.

Custom endpoint rule:
=====================

The configured base URL decides how the path is built:

- ends with ``#``: the URL (minus ``#``) is used verbatim
- ends with ``/``: ``chat/completions`` / ``models`` is appended, no ``v1``
- otherwise: ``/v1/chat/completions`` / ``/v1/models`` is appended

Streaming format:
=================

Server-sent lines prefixed with ``data: ``; the literal ``[DONE]`` ends the
stream. Each JSON delta may carry ``content``, ``reasoning_content`` and
``tool_calls`` fragments keyed by ``index``.
"""

from collections.abc import Mapping
from typing import Any

import httpx

from cogitap.config.schema import ProviderConfig
from cogitap.core.models import ProviderType
from cogitap.providers import (
    ProviderSettings,
    StreamChunk,
    ToolCall,
    ToolCallDelta,
    UnifiedChatRequest,
    UnifiedChatResponse,
    UnifiedMessage,
    first_mapping,
)
from cogitap.providers.errors import DecodingError, InvalidURLError
from cogitap.providers.http import build_request, parse_json_body, send_request
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

OPENAI_BASE = "https://api.openai.com/v1"
OPENROUTER_BASE = "https://openrouter.ai/api/v1"

_DATA_PREFIX = "data: "
_DONE_SENTINEL = "[DONE]"


def custom_endpoint(base_url: str, path: str) -> str:
    """Apply the custom-endpoint suffix rule to ``base_url``."""
    base_url = (base_url or "").strip()
    if not base_url:
        raise InvalidURLError("Custom provider has no base URL")
    if base_url.endswith("#"):
        return base_url[:-1]
    if base_url.endswith("/"):
        return base_url + path
    return f"{base_url}/v1/{path}"


class OpenAIAdapter:
    """Adapter for OpenAI-compatible Chat Completions endpoints."""

    supports_tool_calling = True

    def __init__(
        self,
        provider: ProviderSettings,
        http_client: httpx.AsyncClient | None = None,
        settings: ProviderConfig | None = None,
    ):
        self.provider = provider
        self.http_client = http_client
        self.settings = settings or ProviderConfig()

    # Endpoints

    def chat_url(self) -> str:
        if self.provider.provider_type == ProviderType.OPENAI:
            return f"{OPENAI_BASE}/chat/completions"
        if self.provider.provider_type == ProviderType.OPENROUTER:
            return f"{OPENROUTER_BASE}/chat/completions"
        return custom_endpoint(self.provider.base_url, "chat/completions")

    def models_url(self) -> str:
        if self.provider.provider_type == ProviderType.OPENAI:
            return f"{OPENAI_BASE}/models"
        if self.provider.provider_type == ProviderType.OPENROUTER:
            return f"{OPENROUTER_BASE}/models"
        return custom_endpoint(self.provider.base_url, "models")

    def _headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.provider.api_key}"}
        if self.provider.provider_type == ProviderType.OPENROUTER:
            headers["HTTP-Referer"] = self.settings.openrouter_referer
            headers["X-Title"] = self.settings.openrouter_title
        return headers

    # Requests

    @staticmethod
    def _message_payload(message: UnifiedMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    def convert_request(self, request: UnifiedChatRequest) -> httpx.Request:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [self._message_payload(m) for m in request.messages],
            "temperature": request.temperature,
            "stream": request.stream,
        }
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
            body["tool_choice"] = request.tool_choice.value

        return build_request("POST", self.chat_url(), headers=self._headers(), body=body)

    # Responses

    @staticmethod
    def _raise_if_error(payload: Mapping[str, Any]):
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, Mapping) else str(error)
            raise DecodingError(f"provider returned an error: {message}")

    def parse_stream_chunk(self, line: str) -> StreamChunk | None:
        if not line or not line.startswith(_DATA_PREFIX):
            return None

        data = line[len(_DATA_PREFIX):].strip()
        if data == _DONE_SENTINEL:
            return StreamChunk(is_finished=True)

        payload = parse_json_body(data)
        if payload is None:
            logger.debug(f"Skipping unparsable stream payload: {data[:80]}")
            return None
        if not isinstance(payload, Mapping):
            return None
        self._raise_if_error(payload)

        choice = first_mapping(payload.get("choices"))
        if choice is None:
            return None
        delta = choice.get("delta")
        if not isinstance(delta, Mapping):
            delta = {}

        tool_call_deltas = []
        for raw in delta.get("tool_calls") or []:
            if not isinstance(raw, Mapping):
                continue
            function = raw.get("function") if isinstance(raw.get("function"), Mapping) else {}
            index = raw.get("index")
            tool_call_deltas.append(
                ToolCallDelta(
                    index=index if isinstance(index, int) else 0,
                    id=raw.get("id"),
                    name=function.get("name"),
                    arguments=function.get("arguments"),
                )
            )

        finish_reason = choice.get("finish_reason")
        return StreamChunk(
            content=delta.get("content"),
            reasoning_content=delta.get("reasoning_content"),
            tool_call_deltas=tool_call_deltas or None,
            finish_reason=finish_reason,
            is_finished=finish_reason is not None,
        )

    def parse_response(self, body: bytes) -> UnifiedChatResponse:
        payload = parse_json_body(body)
        if not isinstance(payload, Mapping):
            raise DecodingError("response is not a JSON object")
        self._raise_if_error(payload)

        choice = first_mapping(payload.get("choices"))
        message = choice.get("message") if choice else None
        if not isinstance(message, Mapping):
            raise DecodingError("response has no choices[0].message")

        content = message.get("content")
        if content is not None and not isinstance(content, str):
            raise DecodingError("message content is not text")

        tool_calls = []
        for raw in message.get("tool_calls") or []:
            if not isinstance(raw, Mapping):
                continue
            function = raw.get("function")
            if not isinstance(function, Mapping):
                continue
            call_id, name, arguments = raw.get("id"), function.get("name"), function.get("arguments")
            if not (isinstance(call_id, str) and isinstance(name, str) and isinstance(arguments, str)):
                logger.debug(f"Dropping incomplete tool call: {raw}")
                continue
            tool_calls.append(ToolCall(id=call_id, name=name, arguments=arguments))

        return UnifiedChatResponse(
            content=content or "",
            reasoning_content=message.get("reasoning_content"),
            finish_reason=choice.get("finish_reason"),
            tool_calls=tool_calls,
        )

    async def fetch_models(self) -> list[str]:
        request = build_request("GET", self.models_url(), headers=self._headers())
        if self.http_client is not None:
            response = await send_request(self.http_client, request)
        else:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                response = await send_request(client, request)

        payload = parse_json_body(response.content)
        models = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(models, list):
            raise DecodingError("model list has no data array")
        return [m["id"] for m in models if isinstance(m, Mapping) and isinstance(m.get("id"), str)]
