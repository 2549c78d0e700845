"""Pytest configuration and shared fixtures."""

import json
import os
import tempfile

# Keep config and log files out of the user's home during tests
_TEST_HOME = tempfile.mkdtemp(prefix="cogitap-tests-")
os.environ.setdefault("COGITAP_CONFIG_DIR", os.path.join(_TEST_HOME, "config"))
os.environ.setdefault("COGITAP_HOME", _TEST_HOME)
os.environ.setdefault("COGITAP_LOG_LEVEL", "DEBUG")

import httpx  # noqa: E402
import pytest  # noqa: E402

from cogitap.config.schema import CogitapConfig  # noqa: E402
from cogitap.core.models import (  # noqa: E402
    APIProvider,
    ChatModel,
    Conversation,
    ProviderType,
    init_database,
    now,
)
from cogitap.mcp.manager import MCPManager  # noqa: E402
from cogitap.memory.manager import MemoryManager  # noqa: E402


@pytest.fixture
def test_config():
    """Default configuration, independent of any file on disk."""
    return CogitapConfig()


@pytest.fixture
def db_session():
    """Session bound to a fresh in-memory SQLite database."""
    engine, Session = init_database("sqlite://")
    session = Session()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def memory_manager():
    return MemoryManager()


@pytest.fixture
def mcp_manager(test_config):
    return MCPManager(settings=test_config.mcp)


@pytest.fixture
def make_http_client():
    """Factory for AsyncClients answered by a handler instead of the network."""

    def factory(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def openai_stream():
    """Build an OpenAI-style SSE body from delta dicts."""

    def build(*deltas, finish_reason: str | None = "stop") -> bytes:
        lines = []
        for delta in deltas:
            payload = {"choices": [{"index": 0, "delta": delta, "finish_reason": None}]}
            lines.append(f"data: {json.dumps(payload)}\n\n")
        if finish_reason:
            payload = {"choices": [{"index": 0, "delta": {}, "finish_reason": finish_reason}]}
            lines.append(f"data: {json.dumps(payload)}\n\n")
        lines.append("data: [DONE]\n\n")
        return "".join(lines).encode("utf-8")

    return build


@pytest.fixture
def make_conversation(db_session):
    """Create a conversation bound to a model of the given provider type."""

    def factory(
        provider_type: ProviderType = ProviderType.OPENAI,
        streaming: bool = True,
        system_prompt: str = "You are a test assistant.",
        model_name: str = "test-model",
    ) -> Conversation:
        provider = APIProvider(
            nickname=f"{provider_type.value} test",
            provider_type=provider_type.value,
            api_key="test-key",
            base_url="https://llm.example.com" if provider_type == ProviderType.CUSTOM else "",
            created_at=now(),
        )
        model = ChatModel(model_name=model_name, is_enabled=True, created_at=now())
        provider.models.append(model)
        timestamp = now()
        conversation = Conversation(
            title="Test chat",
            created_at=timestamp,
            updated_at=timestamp,
            temperature=0.5,
            system_prompt=system_prompt,
            streaming_enabled=streaming,
            selected_model=model,
        )
        db_session.add_all([provider, conversation])
        db_session.commit()
        return conversation

    return factory


@pytest.fixture
def sample_memories():
    """Sample memory contents for recall tests."""
    return [
        "I love cats and dogs",
        "My favourite programming language is Python",
        "The user's name is Ada Lovelace",
    ]
