"""Lookup of remote tools offered during a chat request."""

from cogitap.mcp import MCPRegisteredTool
from cogitap.providers import FunctionTool


class MCPToolRegistry:
    """Maps qualified function names back to the remote tool they name."""

    def __init__(self):
        self.lookup: dict[str, MCPRegisteredTool] = {}

    def install(self, tools: list[MCPRegisteredTool]) -> list[FunctionTool]:
        """Replace the lookup with ``tools`` and return their function form."""
        self.lookup = {}
        functions = []
        for tool in tools:
            self.lookup[tool.descriptor.qualified_name] = tool
            functions.append(tool.function_tool)
        return functions

    def registered_tool(self, function_name: str) -> MCPRegisteredTool | None:
        return self.lookup.get(function_name)
