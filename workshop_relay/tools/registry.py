"""
Tool registry - server-side tool implementations, looked up by name.

One instance is created by the server and handed to the ToolExecutor.
"""

from typing import Dict, List, Optional

from ..logging_config import get_logger
from .base import Tool

logger = get_logger(__name__)


class ToolRegistry:
    """Maps tool name -> Tool instance."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """
        Register a tool instance.

        Example:
            registry.register(WeatherTool())
        """
        tool_name = tool.definition.name
        if tool_name in self._tools:
            logger.warning("Tool already registered, overwriting", tool=tool_name)
        self._tools[tool_name] = tool
        logger.info("Registered tool", tool=tool_name)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self) -> List[str]:
        return list(self._tools.keys())

    def clear(self) -> None:
        """Clear all registered tools."""
        self._tools.clear()
