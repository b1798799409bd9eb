"""
Tool calling for turn resolution.

Tenants declare tools as Chat Completions schemas; the executor runs a
registered implementation or a placeholder stand-in.
"""

from .base import PlaceholderTool, Tool, ToolDefinition, ToolParameter
from .context import ToolExecutionContext
from .executor import ToolExecutor
from .registry import ToolRegistry

__all__ = [
    "PlaceholderTool",
    "Tool",
    "ToolDefinition",
    "ToolExecutionContext",
    "ToolExecutor",
    "ToolParameter",
    "ToolRegistry",
]
