"""
Base classes for tool calling.

Tenants declare tools as Chat Completions function schemas. Those schemas are
parsed into ToolDefinition objects so parameters can be validated before a
tool runs.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""
    name: str
    type: str  # "string", "integer", "boolean", "number", "array", "object"
    description: str = ""
    required: bool = False
    enum: Optional[List[Any]] = None
    default: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type}
        if self.description:
            result["description"] = self.description
        if self.enum:
            result["enum"] = self.enum
        if self.default is not None:
            result["default"] = self.default
        return result


@dataclass
class ToolDefinition:
    """Provider-agnostic tool definition."""
    name: str
    description: str = ""
    parameters: List[ToolParameter] = field(default_factory=list)

    @classmethod
    def from_openai_schema(cls, schema: Dict[str, Any]) -> "ToolDefinition":
        """
        Parse a Chat Completions tool declaration.

        Accepts both the nested form ``{"type": "function", "function": {...}}``
        and a bare function object ``{"name": ..., "parameters": {...}}``.

        Raises:
            ValueError: If the schema has no function name
        """
        func = schema.get("function") if isinstance(schema.get("function"), dict) else schema
        name = func.get("name")
        if not name:
            raise ValueError("Tool schema is missing a function name")

        params_schema = func.get("parameters") or {}
        properties = params_schema.get("properties") or {}
        required = set(params_schema.get("required") or [])
        parameters = [
            ToolParameter(
                name=param_name,
                type=prop.get("type", "string"),
                description=prop.get("description", ""),
                required=param_name in required,
                enum=prop.get("enum"),
                default=prop.get("default"),
            )
            for param_name, prop in properties.items()
            if isinstance(prop, dict)
        ]
        return cls(name=name, description=func.get("description", ""), parameters=parameters)

    def to_openai_schema(self) -> Dict[str, Any]:
        """
        Convert to OpenAI API function calling format (Chat Completions).

        OpenAI format:
        {
            "type": "function",
            "function": {
                "name": "tool_name",
                "description": "Tool description",
                "parameters": {
                    "type": "object",
                    "properties": {...},
                    "required": [...]
                }
            }
        }
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.to_dict() for p in self.parameters},
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


class Tool(ABC):
    """
    Abstract base class for all tools.

    Subclasses provide ``definition`` and ``execute``.
    """

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Return tool definition with metadata."""

    @abstractmethod
    async def execute(
        self,
        parameters: Dict[str, Any],
        context: "ToolExecutionContext",
    ) -> Any:
        """
        Execute the tool with given parameters and context.

        Returns:
            Any JSON-serializable result. It is sent back to the model verbatim.

        Raises:
            ValueError: If parameters are invalid
            RuntimeError: If execution fails
        """

    def validate_parameters(self, parameters: Dict[str, Any]) -> bool:
        """
        Validate parameters before execution.

        Raises:
            ValueError: If validation fails with specific error message
        """
        for param in self.definition.parameters:
            if param.required and param.name not in parameters:
                raise ValueError(f"Missing required parameter: {param.name}")

            if param.enum and param.name in parameters:
                if parameters[param.name] not in param.enum:
                    raise ValueError(
                        f"Invalid value for {param.name}. "
                        f"Must be one of: {', '.join(str(v) for v in param.enum)}"
                    )

        return True


class PlaceholderTool(Tool):
    """Stands in for a tenant-declared tool that has no server-side implementation."""

    def __init__(self, definition: ToolDefinition):
        self._definition = definition

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    async def execute(self, parameters: Dict[str, Any], context: "ToolExecutionContext") -> Dict[str, Any]:
        logger.info("Executing placeholder tool", tool=self._definition.name,
                    call_sid=getattr(context, "call_sid", None))
        return {
            "success": True,
            "message": f"Tool {self._definition.name} executed with args: {json.dumps(parameters)}",
        }
