"""Tests for MemoryManager functionality."""

import json
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from cogitap.core.models import MemoryConfig, MemoryRecord
from cogitap.memory import MEMORY_TOOL_NAMES, MemoryToolName
from cogitap.memory.manager import MEMORY_DISABLED_TEXT, MEMORY_NOT_FOUND_TEXT
from cogitap.memory.tools import build_memory_tools, execute_memory_tool
from cogitap.providers import ToolChoice


@pytest.mark.unit
class TestMemoryConfig:
    """Test the lazily created singleton config."""

    def test_get_or_create_config_is_singleton(self, memory_manager, db_session):
        first = memory_manager.get_or_create_config(db_session)
        second = memory_manager.get_or_create_config(db_session)

        assert first.id == second.id
        assert first.is_memory_enabled
        assert first.is_cross_chat_enabled
        assert db_session.query(MemoryConfig).count() == 1

    def test_set_config(self, memory_manager, db_session):
        config = memory_manager.set_config(db_session, enabled=False)

        assert not config.is_memory_enabled
        assert config.is_cross_chat_enabled
        assert db_session.query(MemoryConfig).count() == 1

    def test_config_creation_failure_propagates(self, memory_manager, db_session):
        with patch.object(db_session, "commit", side_effect=OperationalError("x", {}, Exception())):
            with pytest.raises(OperationalError):
                memory_manager.get_or_create_config(db_session)


@pytest.mark.unit
class TestSaveMemory:
    """Test storing memories."""

    def test_save_memory(self, memory_manager, db_session):
        assert memory_manager.save_memory(db_session, "  I like cats  ")

        record = db_session.query(MemoryRecord).one()
        assert record.content == "I like cats"
        assert record.conversation_id is None

    def test_near_duplicate_refreshes_timestamp(self, memory_manager, db_session):
        """A near-identical save touches the existing record instead."""
        assert memory_manager.save_memory(db_session, "I like cats")
        first_updated = db_session.query(MemoryRecord).one().updated_at

        assert not memory_manager.save_memory(db_session, "i like  cats")

        record = db_session.query(MemoryRecord).one()
        assert record.content == "I like cats"
        assert record.updated_at > first_updated

    def test_blank_content_is_rejected(self, memory_manager, db_session):
        assert not memory_manager.save_memory(db_session, "   \n")
        assert db_session.query(MemoryRecord).count() == 0

    def test_disabled_memory_rejects_saves(self, memory_manager, db_session):
        memory_manager.set_config(db_session, enabled=False)

        assert not memory_manager.save_memory(db_session, "I like cats")
        assert db_session.query(MemoryRecord).count() == 0

    def test_conversation_scope_without_cross_chat(
        self, memory_manager, db_session, make_conversation
    ):
        first = make_conversation()
        second = make_conversation()
        memory_manager.set_config(db_session, cross_chat=False)

        assert memory_manager.save_memory(db_session, "I like cats", first)
        # Same text in another conversation is not a duplicate there
        assert memory_manager.save_memory(db_session, "I like cats", second)

        records = db_session.query(MemoryRecord).all()
        assert {r.conversation_id for r in records} == {first.id, second.id}


@pytest.mark.unit
class TestRetrieveMemories:
    """Test keyword recall."""

    def test_retrieve_matching_memory(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "I love cats and dogs")

        assert "I love cats and dogs" in memory_manager.retrieve_memories(db_session, "cats")
        assert memory_manager.retrieve_memories(db_session, "xyz") == ""

    def test_empty_query(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "I love cats and dogs")

        assert memory_manager.retrieve_memories(db_session, " ; ;") == ""

    def test_disabled_memory_returns_nothing(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "I love cats and dogs")
        memory_manager.set_config(db_session, enabled=False)

        assert memory_manager.retrieve_memories(db_session, "cats") == ""

    def test_results_sorted_by_score(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "I love cats and dogs")
        memory_manager.save_memory(db_session, "Cats are great")

        result = memory_manager.retrieve_memories(db_session, "cats; dogs")

        assert result == "I love cats and dogs\n\nCats are great"

    def test_ties_sorted_by_recency(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "Tea in the morning")
        memory_manager.save_memory(db_session, "Tea after lunch")

        result = memory_manager.retrieve_memories(db_session, "tea")

        assert result.split("\n\n") == ["Tea after lunch", "Tea in the morning"]

    def test_conversation_scope(self, memory_manager, db_session, make_conversation):
        first = make_conversation()
        second = make_conversation()
        memory_manager.set_config(db_session, cross_chat=False)
        memory_manager.save_memory(db_session, "I love cats and dogs", first)

        assert memory_manager.retrieve_memories(db_session, "cats", first)
        assert memory_manager.retrieve_memories(db_session, "cats", second) == ""
        assert memory_manager.retrieve_memories(db_session, "cats") == ""


@pytest.mark.unit
class TestUpdateAndDelete:
    """Test editing and removing memories."""

    def test_update_memory(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "My name is Ada")

        result = memory_manager.update_memory(db_session, "My name is Ada", "My name is Grace")

        assert result == "Updated 1 memories."
        assert db_session.query(MemoryRecord).one().content == "My name is Grace"

    def test_update_memory_not_found(self, memory_manager, db_session):
        assert memory_manager.update_memory(db_session, "missing", "x") == MEMORY_NOT_FOUND_TEXT

    def test_update_memory_disabled(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "My name is Ada")
        memory_manager.set_config(db_session, enabled=False)

        assert memory_manager.update_memory(db_session, "My name is Ada", "x") == MEMORY_DISABLED_TEXT

    def test_delete_memory(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "My name is Ada")
        record = db_session.query(MemoryRecord).one()

        memory_manager.delete_memory(db_session, record)

        assert db_session.query(MemoryRecord).count() == 0

    def test_clear_all_memories(self, memory_manager, db_session, sample_memories):
        for content in sample_memories:
            memory_manager.save_memory(db_session, content)

        assert memory_manager.clear_all_memories(db_session) == len(sample_memories)
        assert db_session.query(MemoryRecord).count() == 0

    def test_list_memories_most_recent_first(self, memory_manager, db_session, sample_memories):
        for content in sample_memories:
            memory_manager.save_memory(db_session, content)

        listed = [r.content for r in memory_manager.list_memories(db_session)]

        assert listed == list(reversed(sample_memories))


@pytest.mark.unit
class TestMemoryTools:
    """Test the memory tool family."""

    def test_tools_offered_when_enabled(self, memory_manager, db_session):
        config = memory_manager.get_or_create_config(db_session)
        tools, choice = build_memory_tools(config)

        assert {t.name for t in tools} == MEMORY_TOOL_NAMES
        assert choice == ToolChoice.AUTO
        update = next(t for t in tools if t.name == MemoryToolName.UPDATE_MEMORY.value)
        assert update.parameters["required"] == ["original", "replacement"]

    def test_no_tools_when_disabled(self, memory_manager, db_session):
        config = memory_manager.set_config(db_session, enabled=False)
        assert build_memory_tools(config) == ([], ToolChoice.NONE)

    def test_execute_save_and_retrieve(self, memory_manager, db_session):
        saved = execute_memory_tool(
            memory_manager, db_session, "save_memory", json.dumps({"content": "I love cats"})
        )
        found = execute_memory_tool(
            memory_manager, db_session, "retrieve_memory", json.dumps({"keywords": "cats"})
        )
        missing = execute_memory_tool(
            memory_manager, db_session, "retrieve_memory", json.dumps({"keywords": "xyz"})
        )

        assert saved == "Memory saved."
        assert found == "I love cats"
        assert missing == "No relevant memories found."

    def test_execute_update(self, memory_manager, db_session):
        memory_manager.save_memory(db_session, "I love cats")
        result = execute_memory_tool(
            memory_manager,
            db_session,
            "update_memory",
            json.dumps({"original": "I love cats", "replacement": "I love owls"}),
        )
        assert result == "Updated 1 memories."

    def test_execute_rejects_bad_arguments(self, memory_manager, db_session):
        with pytest.raises(ValueError):
            execute_memory_tool(memory_manager, db_session, "save_memory", "[1, 2]")
        with pytest.raises(ValueError):
            execute_memory_tool(memory_manager, db_session, "save_memory", "{not json")
