"""Conversation, provider and model administration."""

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cogitap.config.schema import CogitapConfig
from cogitap.core.config import config_manager
from cogitap.core.models import (
    APIProvider,
    ChatModel,
    Conversation,
    ConversationMCPSelection,
    MCPServer,
    Message,
    MessageRole,
    ProviderType,
    now,
)
from cogitap.providers import ProviderSettings
from cogitap.providers.factory import create_adapter
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)


class SessionManager:
    """CRUD over conversations and the providers/models they talk to."""

    def __init__(self, config: CogitapConfig | None = None):
        self.config = config or config_manager.config

    @staticmethod
    def _commit(session: Session, action: str):
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise

    # Conversations

    def create_conversation(
        self,
        session: Session,
        title: str | None = None,
        model: ChatModel | None = None,
        system_prompt: str | None = None,
    ) -> Conversation:
        chat = self.config.chat
        timestamp = now()
        conversation = Conversation(
            title=title or chat.default_title,
            created_at=timestamp,
            updated_at=timestamp,
            temperature=chat.default_temperature,
            system_prompt=chat.default_system_prompt if system_prompt is None else system_prompt,
            streaming_enabled=True,
            selected_model=model,
        )
        session.add(conversation)
        self._commit(session, "create conversation")
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    def get_conversation(self, session: Session, conversation_id: str) -> Conversation | None:
        return session.get(Conversation, conversation_id)

    def list_conversations(self, session: Session) -> list[Conversation]:
        """All conversations, most recently updated first."""
        return session.query(Conversation).order_by(Conversation.updated_at.desc()).all()

    def rename_conversation(self, session: Session, conversation: Conversation, title: str):
        title = title.strip()
        if not title:
            raise ValueError("Conversation title cannot be empty")
        conversation.title = title
        conversation.updated_at = now()
        self._commit(session, "rename conversation")

    def update_settings(
        self,
        session: Session,
        conversation: Conversation,
        temperature: float | None = None,
        system_prompt: str | None = None,
        streaming_enabled: bool | None = None,
    ):
        if temperature is not None:
            if not 0.0 <= temperature <= 2.0:
                raise ValueError(f"Temperature out of range: {temperature}")
            conversation.temperature = temperature
        if system_prompt is not None:
            conversation.system_prompt = system_prompt
        if streaming_enabled is not None:
            conversation.streaming_enabled = streaming_enabled
        conversation.updated_at = now()
        self._commit(session, "update conversation settings")

    def delete_conversation(self, session: Session, conversation: Conversation):
        """Delete a conversation with its messages and MCP selections."""
        session.delete(conversation)
        self._commit(session, "delete conversation")
        logger.info(f"Deleted conversation {conversation.id}")

    def reset_context(self, session: Session, conversation: Conversation):
        """Exclude all existing messages from future requests without deleting them."""
        conversation.context_reset_at = now()
        conversation.updated_at = conversation.context_reset_at
        self._commit(session, "reset context")

    @staticmethod
    def visible_messages(conversation: Conversation) -> list[Message]:
        """Messages shown to the user: no system, tool or tool-invocation records."""
        hidden = {MessageRole.SYSTEM.value, MessageRole.TOOL.value}
        return [
            m
            for m in conversation.sorted_messages
            if m.role not in hidden and not m.is_tool_invocation
        ]

    # MCP selections

    def set_mcp_selection(
        self,
        session: Session,
        conversation: Conversation,
        server: MCPServer,
        selected: bool = True,
        pinned: bool = False,
    ):
        """Expose (or stop exposing) a server's tools to a conversation."""
        existing = next(
            (s for s in conversation.mcp_selections if s.server_id == server.id), None
        )
        if selected and existing is None:
            timestamp = now()
            conversation.mcp_selections.append(
                ConversationMCPSelection(
                    server=server, is_pinned=pinned, created_at=timestamp, updated_at=timestamp
                )
            )
        elif selected:
            existing.is_pinned = pinned
            existing.updated_at = now()
        elif existing is not None:
            conversation.mcp_selections.remove(existing)
        self._commit(session, "update MCP selection")

    # Providers and models

    def add_provider(
        self,
        session: Session,
        nickname: str,
        provider_type: ProviderType,
        api_key: str = "",
        base_url: str = "",
    ) -> APIProvider:
        if provider_type == ProviderType.CUSTOM and not base_url.strip():
            raise ValueError("Custom providers need a base URL")
        provider = APIProvider(
            nickname=nickname,
            provider_type=ProviderType(provider_type).value,
            api_key=api_key,
            base_url=base_url.strip(),
            created_at=now(),
        )
        session.add(provider)
        self._commit(session, "add provider")
        logger.info(f"Added provider {nickname} ({provider.provider_type})")
        return provider

    def list_providers(self, session: Session) -> list[APIProvider]:
        return session.query(APIProvider).order_by(APIProvider.created_at).all()

    def delete_provider(self, session: Session, provider: APIProvider):
        """Delete a provider and its models; conversations lose their selection."""
        model_ids = [m.id for m in provider.models]
        if model_ids:
            session.query(Conversation).filter(
                Conversation.selected_model_id.in_(model_ids)
            ).update({Conversation.selected_model_id: None}, synchronize_session="fetch")
        session.delete(provider)
        self._commit(session, "delete provider")

    def add_model(
        self,
        session: Session,
        provider: APIProvider,
        model_name: str,
        display_name: str | None = None,
        enabled: bool = True,
        manually_added: bool = True,
    ) -> ChatModel:
        model_name = model_name.strip()
        if not model_name:
            raise ValueError("Model name cannot be empty")
        model = ChatModel(
            model_name=model_name,
            display_name=display_name,
            is_enabled=enabled,
            is_manually_added=manually_added,
            created_at=now(),
        )
        provider.models.append(model)
        self._commit(session, "add model")
        return model

    def enabled_models(self, session: Session) -> list[ChatModel]:
        return (
            session.query(ChatModel)
            .join(APIProvider)
            .filter(ChatModel.is_enabled.is_(True), APIProvider.is_active.is_(True))
            .order_by(ChatModel.created_at)
            .all()
        )

    def select_model(self, session: Session, conversation: Conversation, model: ChatModel | None):
        conversation.selected_model = model
        conversation.updated_at = now()
        self._commit(session, "select model")

    async def sync_models(
        self,
        session: Session,
        provider: APIProvider,
        http_client: httpx.AsyncClient | None = None,
    ) -> list[ChatModel]:
        """Fetch the provider's model list and store unseen names disabled.

        Returns:
            Models added by this sync

        Raises:
            AdapterError: The listing request failed
        """
        adapter = create_adapter(
            ProviderSettings.from_model(provider), http_client, self.config.providers
        )
        names = await adapter.fetch_models()

        known = {m.model_name for m in provider.models}
        added = []
        for name in names:
            if name in known:
                continue
            known.add(name)
            model = ChatModel(
                model_name=name, is_enabled=False, is_manually_added=False, created_at=now()
            )
            provider.models.append(model)
            added.append(model)

        self._commit(session, "sync models")
        logger.info(f"Synced {len(names)} models for {provider.nickname}, {len(added)} new")
        return added
