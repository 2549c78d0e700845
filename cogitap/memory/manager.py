"""Memory management: storage, deduplication and recall of memory records.

The manager works on a caller-supplied SQLAlchemy session so memory writes
share the transaction discipline of the rest of the store. All operations are
synchronous; they run between network suspensions of a chat turn.

Scoping:
    With cross-chat memory enabled every record is visible everywhere and new
    records are stored globally (``conversation_id`` is NULL). With it
    disabled only records of the current conversation are considered and new
    records are tied to it.
"""

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cogitap.core.models import Conversation, MemoryConfig, MemoryRecord, now
from cogitap.memory.text_matching import MAX_EDIT_DISTANCE, TextMatcher, levenshtein
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

MEMORY_DISABLED_TEXT = "Memory is disabled."
MEMORY_NOT_FOUND_TEXT = "No matching memory found."


class MemoryManager:
    """Stores and recalls memory records.

    Attributes:
        matcher: Tokenizer and scorer used for recall
    """

    def __init__(self, matcher: TextMatcher | None = None):
        self.matcher = matcher or TextMatcher()

    @staticmethod
    def _commit(session: Session, action: str):
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise

    def get_or_create_config(self, session: Session) -> MemoryConfig:
        """Return the singleton memory config, creating it on first access."""
        config = session.query(MemoryConfig).order_by(MemoryConfig.updated_at).first()
        if config is not None:
            return config

        config = MemoryConfig(is_memory_enabled=True, is_cross_chat_enabled=True)
        session.add(config)
        self._commit(session, "create memory config")
        logger.info("Created memory config")
        return config

    def set_config(
        self,
        session: Session,
        enabled: bool | None = None,
        cross_chat: bool | None = None,
    ) -> MemoryConfig:
        config = self.get_or_create_config(session)
        if enabled is not None:
            config.is_memory_enabled = enabled
        if cross_chat is not None:
            config.is_cross_chat_enabled = cross_chat
        config.updated_at = now()
        self._commit(session, "update memory config")
        return config

    def _scoped_records(
        self, session: Session, config: MemoryConfig, conversation: Conversation | None
    ) -> list[MemoryRecord]:
        query = session.query(MemoryRecord)
        if config.is_cross_chat_enabled:
            return query.all()
        if conversation is None:
            return []
        return query.filter(MemoryRecord.conversation_id == conversation.id).all()

    def save_memory(
        self, session: Session, content: str, conversation: Conversation | None = None
    ) -> bool:
        """Store a fact unless it is blank or a near-duplicate.

        A near-duplicate (same text ignoring case, or within edit distance 2)
        has its ``updated_at`` refreshed instead.

        Returns:
            True if a new record was inserted
        """
        trimmed = (content or "").strip()
        if not trimmed:
            return False

        config = self.get_or_create_config(session)
        if not config.is_memory_enabled:
            return False

        normalized = trimmed.lower()
        for record in self._scoped_records(session, config, conversation):
            existing = record.content.lower()
            if existing == normalized or levenshtein(existing, normalized) <= MAX_EDIT_DISTANCE:
                record.updated_at = now()
                self._commit(session, "refresh memory")
                logger.debug(f"Memory already known, refreshed {record.id}")
                return False

        record = MemoryRecord(
            content=trimmed,
            conversation_id=None if config.is_cross_chat_enabled else getattr(conversation, "id", None),
        )
        session.add(record)
        self._commit(session, "save memory")
        logger.info(f"Saved memory {record.id}")
        return True

    def retrieve_memories(
        self, session: Session, query: str, conversation: Conversation | None = None
    ) -> str:
        """Return in-scope memories matching ``query``, best first.

        ``query`` holds keywords separated by ``;``. Matches are joined with a
        blank line; an empty string means nothing matched.
        """
        keywords = [k.strip().lower() for k in (query or "").split(";")]
        keywords = [k for k in keywords if k]
        if not keywords:
            return ""

        config = self.get_or_create_config(session)
        if not config.is_memory_enabled:
            return ""

        scored = []
        for record in self._scoped_records(session, config, conversation):
            score = self.matcher.score(record.content, keywords)
            if score > 0:
                scored.append((score, record.updated_at, record))

        if not scored:
            return ""

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        logger.debug(f"Recalled {len(scored)} memories for {keywords}")
        return "\n\n".join(record.content for _, _, record in scored)

    def update_memory(self, session: Session, original: str, replacement: str) -> str:
        """Replace the content of every record exactly equal to ``original``."""
        config = self.get_or_create_config(session)
        if not config.is_memory_enabled:
            return MEMORY_DISABLED_TEXT

        matches = session.query(MemoryRecord).filter(MemoryRecord.content == original).all()
        if not matches:
            return MEMORY_NOT_FOUND_TEXT

        timestamp = now()
        for record in matches:
            record.content = replacement
            record.updated_at = timestamp
        self._commit(session, "update memory")
        return f"Updated {len(matches)} memories."

    def delete_memory(self, session: Session, record: MemoryRecord):
        session.delete(record)
        self._commit(session, "delete memory")

    def clear_all_memories(self, session: Session) -> int:
        """Delete every memory record.

        Returns:
            Number of records removed
        """
        records = session.query(MemoryRecord).all()
        for record in records:
            session.delete(record)
        self._commit(session, "clear memories")
        logger.info(f"Cleared {len(records)} memories")
        return len(records)

    def list_memories(
        self, session: Session, conversation: Conversation | None = None
    ) -> list[MemoryRecord]:
        """Memories visible from ``conversation``, most recently updated first."""
        config = self.get_or_create_config(session)
        records = self._scoped_records(session, config, conversation)
        return sorted(records, key=lambda r: r.updated_at, reverse=True)
