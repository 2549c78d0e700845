"""
Provider abstraction layer.

This module defines the unified chat vocabulary shared by every provider
adapter, together with the Protocol each adapter implements. Adapters are
translators only: they turn a UnifiedChatRequest into an ``httpx.Request`` and
turn provider payloads (a full JSON body or one line of a stream) back into
the unified shapes. Sending requests and driving the tool loop is the
orchestration engine's job.

Adapter family:
===============

- OpenAI-style: OpenAI, OpenRouter and custom OpenAI-compatible endpoints.
  The only family with tool calling and reasoning deltas modelled.
- Anthropic: Messages API with the system prompt lifted out of the list.
- Gemini: generateContent / streamGenerateContent with role remapping.

Selection is a pure function of the provider type, see
``cogitap.providers.factory``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

from cogitap.core.models import APIProvider, ProviderType


class ToolChoice(str, Enum):
    """Whether the model may call the offered tools."""

    AUTO = "auto"
    NONE = "none"


@dataclass(frozen=True)
class ToolCall:
    """A complete tool invocation requested by the model.

    ``arguments`` is the raw JSON text; it is only parsed at dispatch time.
    """

    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolCallDelta:
    """A streamed fragment of a tool call.

    Deltas sharing ``index`` belong to the same call. ``name`` and ``id``
    arrive once, ``arguments`` fragments arrive in order.
    """

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True)
class FunctionTool:
    """A callable tool offered to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnifiedMessage:
    """
    A single chat turn, independent of any provider's wire format.

    Attributes:
        role: 'system', 'user', 'assistant' or 'tool'
        content: Text of the turn
        tool_calls: Calls requested by an assistant turn
        tool_call_id: The call a 'tool' turn answers

    Use the constructors rather than filling ``tool_calls`` and
    ``tool_call_id`` by hand; at most one of them is populated.
    """

    role: str
    content: str
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None

    @classmethod
    def plain(cls, role: str, content: str) -> "UnifiedMessage":
        return cls(role=role, content=content)

    @classmethod
    def with_tool_calls(
        cls, content: str, tool_calls: list[ToolCall], role: str = "assistant"
    ) -> "UnifiedMessage":
        return cls(role=role, content=content, tool_calls=tuple(tool_calls) or None)

    @classmethod
    def tool_result(cls, content: str, tool_call_id: str) -> "UnifiedMessage":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


@dataclass(frozen=True)
class UnifiedChatRequest:
    """A provider-agnostic chat completion request."""

    messages: list[UnifiedMessage]
    model: str
    temperature: float = 0.7
    stream: bool = True
    tools: list[FunctionTool] = field(default_factory=list)
    tool_choice: ToolChoice = ToolChoice.NONE


@dataclass(frozen=True)
class UnifiedChatResponse:
    """A complete (non-streamed) model answer."""

    content: str
    reasoning_content: str | None = None
    finish_reason: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class StreamChunk:
    """One parsed line of a streamed answer.

    Once a chunk with ``is_finished`` is seen, the stream is not read further.
    """

    content: str | None = None
    reasoning_content: str | None = None
    tool_call_deltas: list[ToolCallDelta] | None = None
    finish_reason: str | None = None
    is_finished: bool = False


@dataclass(frozen=True)
class ProviderSettings:
    """Immutable snapshot of a configured provider, handed to adapters."""

    provider_type: ProviderType
    base_url: str = ""
    api_key: str = ""
    nickname: str = ""

    @classmethod
    def from_model(cls, provider: APIProvider) -> "ProviderSettings":
        return cls(
            provider_type=provider.type,
            base_url=provider.base_url or "",
            api_key=provider.api_key or "",
            nickname=provider.nickname or "",
        )


class APIAdapter(Protocol):
    """Contract every provider adapter fulfils."""

    provider: ProviderSettings
    supports_tool_calling: bool

    def convert_request(self, request: UnifiedChatRequest) -> httpx.Request:
        """Build the HTTP request for a unified chat request.

        Raises:
            InvalidURLError: No endpoint can be constructed
            EncodingError: The body cannot be serialised
        """
        ...

    def parse_stream_chunk(self, line: str) -> StreamChunk | None:
        """Parse one line of a streamed response.

        Returns None for lines that carry no data (blank lines, comments,
        keep-alives, event names).

        Raises:
            DecodingError: A recognised payload is corrupt
        """
        ...

    def parse_response(self, body: bytes) -> UnifiedChatResponse:
        """Parse a full response body.

        Raises:
            DecodingError: The expected shape is absent
        """
        ...

    async def fetch_models(self) -> list[str]:
        """List the model identifiers offered by the provider.

        Raises:
            NetworkError: Transport failure or non-2xx status
        """
        ...


def first_mapping(value: Any) -> Mapping[str, Any] | None:
    """Return the first element of a list when it is a JSON object."""
    if isinstance(value, list) and value and isinstance(value[0], Mapping):
        return value[0]
    return None
