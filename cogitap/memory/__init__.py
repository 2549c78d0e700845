"""Memory system for Cogitap.

Short free-text facts are stored as MemoryRecord rows and recalled through
keyword scoring (see ``cogitap.memory.text_matching``). The model reaches the
store through three tools named below.
"""

from enum import Enum


class MemoryToolName(str, Enum):
    """Local memory tools offered to the model."""

    SAVE_MEMORY = "save_memory"
    RETRIEVE_MEMORY = "retrieve_memory"
    UPDATE_MEMORY = "update_memory"


MEMORY_TOOL_NAMES = frozenset(name.value for name in MemoryToolName)


def is_memory_tool(name: str) -> bool:
    return name in MEMORY_TOOL_NAMES
