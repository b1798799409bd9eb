"""Runs a model-requested tool call."""

from typing import Any, Dict, Iterable, Mapping, Optional

from prometheus_client import Counter

from ..logging_config import get_logger
from .base import PlaceholderTool, Tool, ToolDefinition
from .context import ToolExecutionContext
from .registry import ToolRegistry

logger = get_logger(__name__)

_TOOL_CALLS = Counter(
    "relay_tool_calls_total",
    "Tool invocations requested by the model",
)


class ToolExecutor:
    """Resolves a tool by name and runs it.

    A registered implementation wins. Otherwise the tenant's declaration is
    wrapped in a PlaceholderTool. Any error propagates to the caller.
    """

    def __init__(self, registry: Optional[ToolRegistry] = None):
        self._registry = registry or ToolRegistry()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def resolve(self, name: str, declared_tools: Iterable[Mapping[str, Any]] = ()) -> Tool:
        tool = self._registry.get(name)
        if tool is not None:
            return tool
        for schema in declared_tools:
            definition = ToolDefinition.from_openai_schema(dict(schema))
            if definition.name == name:
                return PlaceholderTool(definition)
        raise LookupError(f"Unknown tool: {name}")

    async def execute(
        self,
        name: str,
        arguments: Dict[str, Any],
        context: ToolExecutionContext,
        declared_tools: Iterable[Mapping[str, Any]] = (),
    ) -> Any:
        _TOOL_CALLS.inc()
        tool = self.resolve(name, declared_tools)
        tool.validate_parameters(arguments)
        logger.info("Executing tool", tool=name, call_sid=context.call_sid)
        return await tool.execute(arguments, context)
