"""Function tools that give the model access to the memory store."""

import json

from sqlalchemy.orm import Session

from cogitap.core.models import Conversation, MemoryConfig
from cogitap.memory import MemoryToolName
from cogitap.memory.manager import MemoryManager
from cogitap.providers import FunctionTool, ToolChoice
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)


def build_memory_tools(config: MemoryConfig) -> tuple[list[FunctionTool], ToolChoice]:
    """Return the memory tools and tool choice for the current config.

    No tools are offered while memory is disabled.
    """
    if not config.is_memory_enabled:
        return [], ToolChoice.NONE

    tools = [
        FunctionTool(
            name=MemoryToolName.SAVE_MEMORY.value,
            description="Save memory. Stores an important fact in long-term memory.",
            parameters={
                "type": "object",
                "properties": {
                    "content": {"type": "string", "description": "Memory content."},
                },
                "required": ["content"],
            },
        ),
        FunctionTool(
            name=MemoryToolName.RETRIEVE_MEMORY.value,
            description="Retrieve memory. Looks up long-term memory by keywords.",
            parameters={
                "type": "object",
                "properties": {
                    "keywords": {
                        "type": "string",
                        "description": "Keywords separated by semicolons.",
                    },
                },
                "required": ["keywords"],
            },
        ),
        FunctionTool(
            name=MemoryToolName.UPDATE_MEMORY.value,
            description="Update memory. Corrects the text of an existing memory.",
            parameters={
                "type": "object",
                "properties": {
                    "original": {"type": "string", "description": "Original memory text."},
                    "replacement": {"type": "string", "description": "Updated memory text."},
                },
                "required": ["original", "replacement"],
            },
        ),
    ]
    return tools, ToolChoice.AUTO


def _parse_arguments(arguments: str) -> dict:
    if not arguments or not arguments.strip():
        return {}
    payload = json.loads(arguments)
    if not isinstance(payload, dict):
        raise ValueError("tool arguments must be a JSON object")
    return payload


def execute_memory_tool(
    memory_manager: MemoryManager,
    session: Session,
    name: str,
    arguments: str,
    conversation: Conversation | None = None,
) -> str:
    """Run a memory tool and describe the outcome as text.

    Raises:
        ValueError: Arguments are not a JSON object or the tool is unknown
    """
    args = _parse_arguments(arguments)
    tool = MemoryToolName(name)

    if tool == MemoryToolName.SAVE_MEMORY:
        content = str(args.get("content", ""))
        if memory_manager.save_memory(session, content, conversation):
            return "Memory saved."
        return "Nothing saved; the memory is empty or already known."

    if tool == MemoryToolName.RETRIEVE_MEMORY:
        result = memory_manager.retrieve_memories(
            session, str(args.get("keywords", "")), conversation
        )
        return result or "No relevant memories found."

    return memory_manager.update_memory(
        session, str(args.get("original", "")), str(args.get("replacement", ""))
    )
