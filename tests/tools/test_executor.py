"""Tests for tool definitions, the registry and the executor."""

import pytest

from workshop_relay.core import SessionState, SessionStore, TenantConfig
from workshop_relay.tools import (
    PlaceholderTool,
    Tool,
    ToolDefinition,
    ToolExecutionContext,
    ToolExecutor,
    ToolParameter,
    ToolRegistry,
)

BOOKING_TOOL = {
    "type": "function",
    "function": {
        "name": "book_table",
        "description": "Reserve a table",
        "parameters": {
            "type": "object",
            "properties": {
                "party_size": {"type": "integer", "description": "Guests"},
                "seating": {"type": "string", "enum": ["indoor", "patio"]},
            },
            "required": ["party_size"],
        },
    },
}


class EchoTool(Tool):
    """Registered implementation used to check precedence over placeholders."""

    def __init__(self):
        self.calls = []

    @property
    def definition(self):
        return ToolDefinition(
            name="book_table",
            parameters=[ToolParameter(name="party_size", type="integer", required=True)],
        )

    async def execute(self, parameters, context):
        self.calls.append((parameters, context))
        return {"confirmed": True, "party_size": parameters["party_size"]}


def _context(**kwargs):
    return ToolExecutionContext(session_token="abc123", call_sid="CA1", **kwargs)


class TestToolDefinition:

    def test_from_openai_schema(self):
        definition = ToolDefinition.from_openai_schema(BOOKING_TOOL)

        assert definition.name == "book_table"
        assert definition.description == "Reserve a table"
        params = {p.name: p for p in definition.parameters}
        assert params["party_size"].required is True
        assert params["seating"].enum == ["indoor", "patio"]

    def test_bare_function_schema_accepted(self):
        definition = ToolDefinition.from_openai_schema({"name": "hang_up"})

        assert definition.name == "hang_up"
        assert definition.parameters == []

    def test_schema_without_name_rejected(self):
        with pytest.raises(ValueError):
            ToolDefinition.from_openai_schema({"type": "function", "function": {}})

    def test_to_openai_schema_keeps_required_and_enum(self):
        schema = ToolDefinition.from_openai_schema(BOOKING_TOOL).to_openai_schema()

        assert schema["function"]["parameters"]["required"] == ["party_size"]
        assert schema["function"]["parameters"]["properties"]["seating"]["enum"] == ["indoor", "patio"]


class TestValidation:

    def test_missing_required_parameter(self):
        tool = PlaceholderTool(ToolDefinition.from_openai_schema(BOOKING_TOOL))

        with pytest.raises(ValueError, match="party_size"):
            tool.validate_parameters({"seating": "patio"})

    def test_enum_violation(self):
        tool = PlaceholderTool(ToolDefinition.from_openai_schema(BOOKING_TOOL))

        with pytest.raises(ValueError, match="seating"):
            tool.validate_parameters({"party_size": 2, "seating": "roof"})


class TestToolExecutor:

    @pytest.mark.asyncio
    async def test_declared_tool_runs_placeholder(self):
        executor = ToolExecutor()

        result = await executor.execute("book_table", {"party_size": 4}, _context(), [BOOKING_TOOL])

        assert result == {
            "success": True,
            "message": 'Tool book_table executed with args: {"party_size": 4}',
        }

    @pytest.mark.asyncio
    async def test_registered_tool_takes_precedence(self):
        registry = ToolRegistry()
        echo = EchoTool()
        registry.register(echo)
        executor = ToolExecutor(registry)

        result = await executor.execute("book_table", {"party_size": 2}, _context(), [BOOKING_TOOL])

        assert result == {"confirmed": True, "party_size": 2}
        assert len(echo.calls) == 1
        assert registry.list_tools() == ["book_table"]

    @pytest.mark.asyncio
    async def test_unknown_tool_raises(self):
        with pytest.raises(LookupError):
            await ToolExecutor().execute("launch_rocket", {}, _context(), [BOOKING_TOOL])

    @pytest.mark.asyncio
    async def test_invalid_arguments_raise(self):
        with pytest.raises(ValueError):
            await ToolExecutor().execute("book_table", {}, _context(), [BOOKING_TOOL])


class TestToolExecutionContext:

    @pytest.mark.asyncio
    async def test_get_session_returns_live_session(self):
        store = SessionStore()
        session = SessionState.create(TenantConfig(session_token="abc123"))
        await store.add(session)

        assert await _context(session_store=store).get_session() is session

    @pytest.mark.asyncio
    async def test_get_session_without_store_raises(self):
        with pytest.raises(RuntimeError):
            await _context().get_session()

    @pytest.mark.asyncio
    async def test_get_session_after_call_ended_raises(self):
        with pytest.raises(RuntimeError):
            await _context(session_store=SessionStore()).get_session()
