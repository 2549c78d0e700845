"""Google Gemini generateContent adapter."""

from collections.abc import Mapping
from typing import Any

import httpx

from cogitap.config.schema import ProviderConfig
from cogitap.providers import (
    ProviderSettings,
    StreamChunk,
    UnifiedChatRequest,
    UnifiedChatResponse,
    first_mapping,
)
from cogitap.providers.errors import DecodingError
from cogitap.providers.http import build_request, parse_json_body, send_request
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_MODELS = [
    "gemini-2.0-flash-exp",
    "gemini-1.5-pro",
    "gemini-1.5-flash",
    "gemini-1.5-flash-8b",
]


def _candidate_text(candidate: Mapping[str, Any]) -> str:
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, Mapping) else None
    if not isinstance(parts, list):
        return ""
    return "".join(
        part["text"] for part in parts if isinstance(part, Mapping) and isinstance(part.get("text"), str)
    )


def _error_message(payload: Mapping[str, Any]) -> str | None:
    error = payload.get("error")
    if not error:
        return None
    return str(error.get("message") if isinstance(error, Mapping) else error)


class GeminiAdapter:
    """Adapter for the Gemini API.

    The API key travels as the ``key`` query parameter. Streaming returns a
    JSON array of response objects, one per line, which is consumed one
    element at a time.
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

    def _params(self) -> dict[str, str]:
        return {"key": self.provider.api_key}

    def convert_request(self, request: UnifiedChatRequest) -> httpx.Request:
        operation = "streamGenerateContent" if request.stream else "generateContent"
        url = f"{GEMINI_BASE}/models/{request.model}:{operation}"

        system_prompt = None
        contents: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                system_prompt = message.content
                continue
            if message.role == "assistant" and message.tool_calls and not message.content:
                continue
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": request.temperature},
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        return build_request("POST", url, params=self._params(), body=body)

    def parse_stream_chunk(self, line: str) -> StreamChunk | None:
        text = line.strip()
        if text.startswith("data:"):
            text = text[len("data:"):].strip()
        # Strip the array punctuation surrounding each streamed object
        text = text.strip("[],").strip()
        if not text:
            return None

        payload = parse_json_body(text)
        if not isinstance(payload, Mapping):
            return None
        message = _error_message(payload)
        if message:
            raise DecodingError(f"provider returned an error: {message}")

        candidate = first_mapping(payload.get("candidates"))
        if candidate is None:
            return None
        finish_reason = candidate.get("finishReason")
        content = _candidate_text(candidate)
        return StreamChunk(
            content=content or None,
            finish_reason=finish_reason,
            is_finished=finish_reason is not None,
        )

    def parse_response(self, body: bytes) -> UnifiedChatResponse:
        payload = parse_json_body(body)
        if not isinstance(payload, Mapping):
            raise DecodingError("response is not a JSON object")
        message = _error_message(payload)
        if message:
            raise DecodingError(f"provider returned an error: {message}")

        candidate = first_mapping(payload.get("candidates"))
        if candidate is None:
            raise DecodingError("response has no candidates")
        return UnifiedChatResponse(
            content=_candidate_text(candidate), finish_reason=candidate.get("finishReason")
        )

    async def fetch_models(self) -> list[str]:
        request = build_request("GET", f"{GEMINI_BASE}/models", params=self._params())
        if self.http_client is not None:
            response = await send_request(self.http_client, request)
        else:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                response = await send_request(client, request)

        payload = parse_json_body(response.content)
        models = payload.get("models") if isinstance(payload, Mapping) else None
        if not isinstance(models, list):
            logger.warning("Gemini model list unreadable, using built-in list")
            return list(DEFAULT_MODELS)

        names = []
        for model in models:
            if not isinstance(model, Mapping) or not isinstance(model.get("name"), str):
                continue
            methods = model.get("supportedGenerationMethods") or []
            if "generateContent" not in methods:
                continue
            names.append(model["name"].removeprefix("models/"))
        return names or list(DEFAULT_MODELS)
