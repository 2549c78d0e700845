"""Adapter selection by provider type."""

import httpx

from cogitap.config.schema import ProviderConfig
from cogitap.core.models import ProviderType
from cogitap.providers import APIAdapter, ProviderSettings
from cogitap.providers.anthropic_adapter import AnthropicAdapter
from cogitap.providers.gemini_adapter import GeminiAdapter
from cogitap.providers.openai_adapter import OpenAIAdapter


def create_adapter(
    provider: ProviderSettings,
    http_client: httpx.AsyncClient | None = None,
    settings: ProviderConfig | None = None,
) -> APIAdapter:
    """Return the adapter for ``provider``.

    OpenAI, OpenRouter and custom endpoints share the OpenAI-style adapter.
    """
    if provider.provider_type == ProviderType.ANTHROPIC:
        return AnthropicAdapter(provider, http_client, settings)
    if provider.provider_type == ProviderType.GEMINI:
        return GeminiAdapter(provider, http_client, settings)
    return OpenAIAdapter(provider, http_client, settings)
