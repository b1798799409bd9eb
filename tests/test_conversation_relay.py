"""
Tests for the ConversationRelay engine.

The model client is scripted, the call and observer connections are fakes,
and everything else (registry, session store, credential exchange, tool
executor) is the real implementation.
"""

import json

import pytest
from websockets.exceptions import ConnectionClosedError

from workshop_relay.core import ObserverChannel, SessionState, TenantConfig
from workshop_relay.engine import APOLOGY_TEXT, DEFAULT_SYSTEM_PROMPT
from workshop_relay.errors import LLMError
from workshop_relay.llm import ChatCompletion, TokenUsage, ToolCall
from tests.fakes import FakeWebSocket, RelayHarness, RespondingObserver, ScriptedLLM

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Look up the weather",
        "parameters": {
            "type": "object",
            "properties": {"city": {"type": "string", "description": "City name"}},
            "required": ["city"],
        },
    },
}


def _text(content, prompt_tokens=10, completion_tokens=5):
    return ChatCompletion(
        content=content,
        message={"role": "assistant", "content": content},
        usage=TokenUsage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens),
    )


def _tool_response(*calls):
    tool_calls = [ToolCall(id=call_id, name=name, arguments=json.dumps(args)) for call_id, name, args in calls]
    message = {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
            for c in tool_calls
        ],
    }
    return ChatCompletion(content="", tool_calls=tool_calls, message=message, usage=TokenUsage(20, 8, 28))


def _setup_event(call_sid="CA123"):
    return {
        "type": "setup",
        "sessionId": "VX1",
        "callSid": call_sid,
        "from": "+15550001111",
        "to": "+15550002222",
        "direction": "inbound",
    }


def _prompt(text):
    return {"type": "prompt", "voicePrompt": text}


def _observe(harness, token):
    observer = FakeWebSocket(f"/tunnel/{token}")
    harness.registry.register(token, ObserverChannel(token, observer))
    return observer


async def _run_call(harness, tenant, *events, close_error=None):
    call = FakeWebSocket(f"/ws/{tenant.session_token}", incoming=events, close_error=close_error)
    call.finish()
    await harness.engine.handle_call(call, tenant)
    return call


class TestTurnResolution:

    @pytest.mark.asyncio
    async def test_stored_secret_single_model_call(self):
        harness = RelayHarness(ScriptedLLM(_text("It's sunny and 72 degrees.")))
        tenant = TenantConfig(session_token="abc123", student_name="Ada", openai_api_key="sk-live-1")

        call = await _run_call(harness, tenant, _setup_event(), _prompt("What's the weather?"))

        [request] = harness.llm.calls
        assert request["api_key"] == "sk-live-1"
        assert request["tools"] is None
        assert request["messages"] == [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": "What's the weather?"},
        ]
        assert call.sent_json() == [{"type": "text", "token": "It's sunny and 72 degrees.", "last": True}]

    @pytest.mark.asyncio
    async def test_tenant_system_prompt_and_tools_are_sent(self):
        harness = RelayHarness(ScriptedLLM(_text("Hello!")))
        tenant = TenantConfig(session_token="abc123", openai_api_key="sk-live-1",
                              system_prompt="You are a pirate.", tools=(WEATHER_TOOL,))

        await _run_call(harness, tenant, _prompt("Hi"))

        [request] = harness.llm.calls
        assert request["messages"][0] == {"role": "system", "content": "You are a pirate."}
        assert request["tools"] == [WEATHER_TOOL]

    @pytest.mark.asyncio
    async def test_two_tool_calls_make_exactly_one_follow_up_call(self):
        harness = RelayHarness(ScriptedLLM(
            _tool_response(("call_1", "get_weather", {"city": "Paris"}),
                           ("call_2", "get_weather", {"city": "Rome"})),
            _text("Paris is mild and Rome is hot."),
        ))
        tenant = TenantConfig(session_token="abc123", openai_api_key="sk-live-1",
                              system_prompt="Weather bot.", tools=(WEATHER_TOOL,))
        observer = _observe(harness, "abc123")

        call = await _run_call(harness, tenant, _prompt("Weather in Paris and Rome?"))

        assert len(harness.llm.calls) == 2
        follow_up = harness.llm.calls[1]
        assert follow_up["tools"] is None
        roles = [m["role"] for m in follow_up["messages"]]
        assert roles == ["system", "user", "assistant", "tool", "tool"]
        assert follow_up["messages"][0]["content"] == "Weather bot."
        assert follow_up["messages"][2]["tool_calls"][0]["id"] == "call_1"
        assert [m["tool_call_id"] for m in follow_up["messages"][3:]] == ["call_1", "call_2"]
        assert "get_weather executed" in json.loads(follow_up["messages"][3]["content"])["message"]

        assert call.sent_json() == [{"type": "text", "token": "Paris is mild and Rome is hot.", "last": True}]
        types = observer.sent_types()
        assert types.count("tool_call_start") == 2
        assert types.count("tool_call_result") == 2
        assert types.count("token_usage") == 2
        ai_response = next(e for e in observer.sent_json() if e["type"] == "ai_response")
        assert ai_response["afterTools"] is True

    @pytest.mark.asyncio
    async def test_model_failure_answers_apology_without_assistant_turn(self):
        harness = RelayHarness(ScriptedLLM(LLMError("rate limited", status=429)))
        tenant = TenantConfig(session_token="abc123", openai_api_key="sk-live-1")
        observer = _observe(harness, "abc123")
        session = SessionState.create(tenant)
        call = FakeWebSocket("/ws/abc123")

        await harness.engine.handle_event(call, session, json.dumps(_prompt("Hello?")))

        assert call.sent_json() == [{"type": "text", "token": APOLOGY_TEXT, "last": True}]
        assert [turn.role for turn in session.history] == ["user"]
        error = next(e for e in observer.sent_json() if e["type"] == "error")
        assert "rate limited" in error["message"]

    @pytest.mark.asyncio
    async def test_malformed_tool_arguments_still_mirror_tool_start(self):
        bad_call = ToolCall(id="call_1", name="get_weather", arguments="{\"city\": ")
        completion = ChatCompletion(content="", tool_calls=[bad_call], usage=TokenUsage(20, 8, 28))
        harness = RelayHarness(ScriptedLLM(completion))
        tenant = TenantConfig(session_token="abc123", openai_api_key="sk-live-1", tools=(WEATHER_TOOL,))
        session = SessionState.create(tenant)
        observer = _observe(harness, "abc123")
        call = FakeWebSocket("/ws/abc123")

        await harness.engine.handle_event(call, session, json.dumps(_prompt("Weather?")))

        events = [e for e in observer.sent_json() if e["type"] in ("tool_call_start", "tool_call_result", "error")]
        assert [e["type"] for e in events] == ["tool_call_start", "error"]
        assert events[0]["toolCallId"] == "call_1"
        assert events[0]["arguments"] == "{\"city\": "
        assert call.sent_json() == [{"type": "text", "token": APOLOGY_TEXT, "last": True}]
        assert [turn.role for turn in session.history] == ["user"]

    @pytest.mark.asyncio
    async def test_tool_failure_uses_model_failure_policy(self):
        harness = RelayHarness(ScriptedLLM(_tool_response(("call_1", "launch_rocket", {}))))
        tenant = TenantConfig(session_token="abc123", openai_api_key="sk-live-1", tools=(WEATHER_TOOL,))
        session = SessionState.create(tenant)
        call = FakeWebSocket("/ws/abc123")

        await harness.engine.handle_event(call, session, json.dumps(_prompt("Launch it")))

        assert call.sent_json() == [{"type": "text", "token": APOLOGY_TEXT, "last": True}]
        assert len(harness.llm.calls) == 1
        assert [turn.role for turn in session.history] == ["user"]

    @pytest.mark.asyncio
    async def test_history_carries_previous_turns(self):
        harness = RelayHarness(ScriptedLLM(_text("First answer."), _text("Second answer.")))
        tenant = TenantConfig(session_token="abc123", openai_api_key="sk-live-1")

        call = await _run_call(harness, tenant, _prompt("One"), _prompt("Two"))

        second = harness.llm.calls[1]["messages"]
        assert [m["content"] for m in second[1:]] == ["One", "First answer.", "Two"]
        assert [m["token"] for m in call.sent_json()] == ["First answer.", "Second answer."]


class TestSecretResolution:

    @pytest.mark.asyncio
    async def test_no_stored_secret_and_no_observer_uses_default(self):
        harness = RelayHarness(ScriptedLLM(_text("Hi there.")), fallback_key="sk-default")
        tenant = TenantConfig(session_token="xyz789")

        await _run_call(harness, tenant, _setup_event(), _prompt("Hello"))

        assert harness.llm.calls[0]["api_key"] == "sk-default"
        assert harness.registry.count() == 0

    @pytest.mark.asyncio
    async def test_secret_from_observer_is_fetched_once(self):
        harness = RelayHarness(ScriptedLLM(_text("One."), _text("Two.")), credential_timeout=1.0)
        observer = RespondingObserver("abc123", "sk-student")
        observer.channel = ObserverChannel("abc123", observer)
        harness.registry.register("abc123", observer.channel)
        tenant = TenantConfig(session_token="abc123")

        await _run_call(harness, tenant, _prompt("First"), _prompt("Second"))

        assert [c["api_key"] for c in harness.llm.calls] == ["sk-student", "sk-student"]
        assert observer.sent_types().count("credential_request") == 1

    @pytest.mark.asyncio
    async def test_silent_observer_times_out_to_default(self):
        harness = RelayHarness(ScriptedLLM(_text("Hi.")), fallback_key="sk-default", credential_timeout=0.05)
        _observe(harness, "abc123")
        session = SessionState.create(TenantConfig(session_token="abc123"))

        assert await harness.engine.resolve_secret(session) == "sk-default"
        assert session.secret_source == "fallback"

    @pytest.mark.asyncio
    async def test_stored_secret_skips_exchange(self):
        harness = RelayHarness(ScriptedLLM())
        observer = _observe(harness, "abc123")
        session = SessionState.create(TenantConfig(session_token="abc123", openai_api_key="sk-live-1"))

        assert await harness.engine.resolve_secret(session) == "sk-live-1"
        assert session.secret_source == "stored"
        assert observer.sent == []


class TestEventMirroring:

    @pytest.mark.asyncio
    async def test_call_lifecycle_is_mirrored_in_order(self):
        harness = RelayHarness(ScriptedLLM(_text("Sure.")))
        tenant = TenantConfig(session_token="abc123", student_name="Ada", openai_api_key="sk-live-1")
        observer = _observe(harness, "abc123")

        await _run_call(
            harness, tenant,
            _setup_event(),
            _prompt("Can you help?"),
            {"type": "dtmf", "digit": "5"},
            {"type": "interrupt", "utteranceUntilInterrupt": "Sure, I can"},
        )

        assert observer.sent_types() == [
            "call_setup", "user_spoke", "token_usage", "ai_response",
            "dtmf_pressed", "interrupted", "call_ended",
        ]
        events = {e["type"]: e for e in observer.sent_json()}
        assert events["call_setup"]["callSid"] == "CA123"
        assert events["call_setup"]["studentName"] == "Ada"
        assert events["user_spoke"]["text"] == "Can you help?"
        assert events["token_usage"]["totalTokens"] == 15
        assert events["ai_response"]["afterTools"] is False
        assert events["dtmf_pressed"]["digit"] == "5"
        assert events["interrupted"]["utteranceUntilInterrupt"] == "Sure, I can"
        assert events["call_ended"]["callSid"] == "CA123"
        assert events["call_ended"]["from"] == "+15550001111"
        assert events["call_ended"]["duration"] >= 0
        assert all("timestamp" in e for e in observer.sent_json())

    @pytest.mark.asyncio
    async def test_interrupt_does_not_touch_history(self):
        harness = RelayHarness(ScriptedLLM())
        session = SessionState.create(TenantConfig(session_token="abc123"))

        await harness.engine.handle_event(
            FakeWebSocket(), session, json.dumps({"type": "interrupt", "utteranceUntilInterrupt": "Hel"}),
        )

        assert session.history == []
        assert harness.llm.calls == []

    @pytest.mark.asyncio
    async def test_bad_json_and_unknown_events_are_skipped(self):
        harness = RelayHarness(ScriptedLLM(_text("Still here.")))
        tenant = TenantConfig(session_token="abc123", openai_api_key="sk-live-1")

        call = await _run_call(harness, tenant, "{not json", {"type": "mystery"}, _prompt("Hello"))

        assert call.sent_json() == [{"type": "text", "token": "Still here.", "last": True}]

    @pytest.mark.asyncio
    async def test_session_is_discarded_on_close(self):
        harness = RelayHarness(ScriptedLLM())
        tenant = TenantConfig(session_token="abc123")

        await _run_call(harness, tenant, _setup_event())

        assert harness.sessions.count() == 0

    @pytest.mark.asyncio
    async def test_transport_error_mirrors_error_then_call_ended(self):
        harness = RelayHarness(ScriptedLLM())
        tenant = TenantConfig(session_token="abc123")
        observer = _observe(harness, "abc123")

        await _run_call(harness, tenant, _setup_event(), close_error=ConnectionClosedError(None, None))

        assert observer.sent_types() == ["call_setup", "error", "call_ended"]
        assert observer.sent_json()[1]["source"] == "call"
