"""
ConversationRelay engine.

Drives one call connection from the telephony gateway: inbound events
(``setup``, ``prompt``, ``dtmf``, ``interrupt``) update the call's
SessionState, prompts run the turn-resolution loop against the language
model, and every step is mirrored to the student's observer connection.

Each call gets a reader (the websocket receive loop) and a processor task fed
through an asyncio.Queue. Events are processed strictly one at a time, in
arrival order. Model and tool failures never end the call; the caller hears an
apology instead.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK

from .config import OpenAIConfig
from .core.credential_exchange import CredentialExchange
from .core.models import ROLE_ASSISTANT, ROLE_TOOL, ROLE_USER, ConversationTurn, SessionState, TenantConfig
from .core.session_store import SessionStore
from .core.tunnel_registry import TunnelRegistry
from .errors import CredentialExchangeError
from .llm import ChatCompletion, OpenAIChatClient, TokenUsage
from .logging_config import get_logger, token_prefix
from .tools import ToolExecutionContext, ToolExecutor

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant.

# Voice Conversation Guidelines
- Keep responses BRIEF (1-2 sentences max)
- Be conversational and natural
- Avoid lists, bullet points, or structured formatting
- Don't say "as an AI" or mention you're artificial
- If you don't know something, say so briefly
- Respond quickly - every second matters in voice
- Use casual language, contractions, and natural speech patterns

# Response Style
- Short and direct
- Friendly but professional
- Natural and human-like"""

APOLOGY_TEXT = "I apologize, I encountered an error processing your request."

SECRET_SOURCE_STORED = "stored"
SECRET_SOURCE_TUNNEL = "tunnel"
SECRET_SOURCE_FALLBACK = "fallback"
SECRET_SOURCE_NONE = "none"

_STOP = object()


class ConversationRelayEngine:
    """Per-call state machine for the ConversationRelay protocol."""

    def __init__(
        self,
        registry: TunnelRegistry,
        credential_exchange: CredentialExchange,
        llm_client: OpenAIChatClient,
        tool_executor: ToolExecutor,
        session_store: SessionStore,
        openai_config: OpenAIConfig,
        default_system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        self._registry = registry
        self._credentials = credential_exchange
        self._llm = llm_client
        self._tools = tool_executor
        self._sessions = session_store
        self._openai_config = openai_config
        self._default_system_prompt = default_system_prompt

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle_call(self, websocket, tenant: TenantConfig) -> None:
        """Serve one accepted call connection until it closes."""
        session = SessionState.create(tenant)
        await self._sessions.add(session)
        logger.info("ConversationRelay started", session=token_prefix(session.session_token),
                    student=tenant.display_name)

        queue: asyncio.Queue = asyncio.Queue()
        processor = asyncio.create_task(self._process_events(websocket, session, queue))
        transport_error: Optional[Exception] = None
        try:
            async for message in websocket:
                await queue.put(message)
        except ConnectionClosedOK:
            pass
        except ConnectionClosedError as e:
            logger.warning("Call connection transport error",
                           session=token_prefix(session.session_token), error=str(e))
            transport_error = e
        finally:
            # Events already received are processed before teardown.
            await queue.put(_STOP)
            await processor
            if transport_error is not None:
                await self._mirror(session, "error", {"source": "call", "message": str(transport_error)})
            await self._on_call_closed(session)

    async def _process_events(self, websocket, session: SessionState, queue: asyncio.Queue) -> None:
        while True:
            raw = await queue.get()
            if raw is _STOP:
                return
            try:
                await self.handle_event(websocket, session, raw)
            except Exception:
                logger.error("Unhandled error processing call event",
                             session=token_prefix(session.session_token), exc_info=True)

    async def _on_call_closed(self, session: SessionState) -> None:
        metadata = session.metadata
        duration = metadata.duration_seconds()
        logger.info("ConversationRelay disconnected", session=token_prefix(session.session_token),
                    call_sid=metadata.call_sid, duration_sec=duration)
        await self._mirror(session, "call_ended", {
            "duration": duration,
            "from": metadata.from_number,
            "to": metadata.to_number,
            "callSid": metadata.call_sid,
        })
        await self._sessions.remove(session)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, websocket, session: SessionState, raw: Any) -> None:
        """Apply one inbound frame to the session."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            event = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            logger.error("Error parsing call message", session=token_prefix(session.session_token), error=str(e))
            return
        if not isinstance(event, dict):
            logger.error("Call message is not a JSON object", session=token_prefix(session.session_token))
            return

        event_type = event.get("type")
        if event_type == "setup":
            await self._on_setup(session, event)
        elif event_type == "prompt":
            await self._on_prompt(websocket, session, event)
        elif event_type == "dtmf":
            logger.info("DTMF received", session=token_prefix(session.session_token), digit=event.get("digit"))
            await self._mirror(session, "dtmf_pressed", {"digit": event.get("digit")})
        elif event_type == "interrupt":
            # Mirrored only; the interrupted utterance is not added to history.
            utterance = event.get("utteranceUntilInterrupt")
            logger.info("Caller interrupted", session=token_prefix(session.session_token))
            await self._mirror(session, "interrupted", {"utteranceUntilInterrupt": utterance})
        else:
            logger.warning("Unknown call event", session=token_prefix(session.session_token), event_type=event_type)

    async def _on_setup(self, session: SessionState, event: Dict[str, Any]) -> None:
        metadata = session.metadata
        metadata.apply_setup(event)
        logger.info("Call setup", session=token_prefix(session.session_token),
                    call_sid=metadata.call_sid, direction=metadata.direction)
        await self._mirror(session, "call_setup", {
            "sessionId": metadata.session_id,
            "callSid": metadata.call_sid,
            "from": metadata.from_number,
            "to": metadata.to_number,
            "direction": metadata.direction,
            "studentName": metadata.student_name,
            "startTime": metadata.start_time.isoformat(),
        })

    async def _on_prompt(self, websocket, session: SessionState, event: Dict[str, Any]) -> None:
        text = event.get("voicePrompt") or ""
        session.append(ConversationTurn(role=ROLE_USER, content=text))
        await self._mirror(session, "user_spoke", {"text": text})

        answer = await self.resolve_turn(session)
        await self._send_json(websocket, session, {"type": "text", "token": answer, "last": True})

    # ------------------------------------------------------------------
    # Secret resolution
    # ------------------------------------------------------------------

    async def resolve_secret(self, session: SessionState) -> Optional[str]:
        """Stored key, then the observer, then the server default. Cached per call."""
        if session.secret_resolved:
            return session.resolved_secret

        secret = session.tenant.openai_api_key
        source = SECRET_SOURCE_STORED
        if not secret:
            try:
                secret = await self._credentials.request_secret(session.session_token)
                source = SECRET_SOURCE_TUNNEL
            except CredentialExchangeError as e:
                logger.info("Credential exchange unavailable", session=token_prefix(session.session_token),
                            error=str(e))
                secret = None
        if not secret:
            secret = self._openai_config.api_key
            source = SECRET_SOURCE_FALLBACK if secret else SECRET_SOURCE_NONE

        session.resolved_secret = secret
        session.secret_source = source
        logger.info("Resolved model credential", session=token_prefix(session.session_token), source=source)
        return secret

    # ------------------------------------------------------------------
    # Turn resolution
    # ------------------------------------------------------------------

    def system_prompt_for(self, session: SessionState) -> str:
        return session.tenant.system_prompt or self._default_system_prompt

    async def resolve_turn(self, session: SessionState) -> str:
        """Run the model (and at most one tool round) for the latest user turn.

        Returns the text to speak. Failures are mirrored and answered with
        APOLOGY_TEXT; no assistant turn is recorded for a failed turn.
        """
        try:
            return await self._run_turn(session)
        except Exception as e:
            logger.error("Turn resolution failed", session=token_prefix(session.session_token),
                         error=str(e), error_type=type(e).__name__)
            await self._mirror(session, "error", {"source": "model", "message": str(e)})
            return APOLOGY_TEXT

    async def _run_turn(self, session: SessionState) -> str:
        api_key = await self.resolve_secret(session)
        system_prompt = self.system_prompt_for(session)
        declared_tools = list(session.tenant.tools)
        call_id = session.metadata.call_sid or token_prefix(session.session_token)

        completion = await self._llm.complete(
            api_key, session.build_messages(system_prompt), declared_tools or None, call_id=call_id,
        )
        await self._mirror_usage(session, completion.usage)

        after_tools = bool(completion.tool_calls)
        if after_tools:
            await self._run_tools(session, completion, declared_tools)
            completion = await self._llm.complete(api_key, session.build_messages(system_prompt), call_id=call_id)
            await self._mirror_usage(session, completion.usage)
            if completion.tool_calls:
                logger.warning("Ignoring nested tool calls", session=token_prefix(session.session_token),
                               count=len(completion.tool_calls))

        answer = completion.content
        await self._mirror(session, "ai_response", {"text": answer, "afterTools": after_tools})
        session.append(ConversationTurn(role=ROLE_ASSISTANT, content=answer))
        return answer

    async def _run_tools(self, session: SessionState, completion: ChatCompletion, declared_tools: List[dict]) -> None:
        """Execute every requested tool, then commit the call and result turns together."""
        tool_calls_payload = completion.message.get("tool_calls") or [
            {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
            for c in completion.tool_calls
        ]
        turns = [ConversationTurn(role=ROLE_ASSISTANT, content=completion.content or None,
                                  tool_calls=tool_calls_payload)]
        context = ToolExecutionContext(
            session_token=session.session_token,
            call_sid=session.metadata.call_sid,
            student_name=session.tenant.student_name,
            session_store=self._sessions,
        )

        for call in completion.tool_calls:
            await self._mirror(session, "tool_call_start", {
                "toolCallId": call.id, "name": call.name, "arguments": call.arguments,
            })
            arguments = call.parse_arguments()
            result = await self._tools.execute(call.name, arguments, context, declared_tools)
            await self._mirror(session, "tool_call_result", {
                "toolCallId": call.id, "name": call.name, "result": result,
            })
            turns.append(ConversationTurn(role=ROLE_TOOL, content=json.dumps(result), tool_call_id=call.id))

        for turn in turns:
            session.append(turn)

    # ------------------------------------------------------------------
    # Outbound helpers
    # ------------------------------------------------------------------

    async def _mirror_usage(self, session: SessionState, usage: TokenUsage) -> None:
        cost = usage.estimate_cost(
            self._openai_config.prompt_price_per_million,
            self._openai_config.completion_price_per_million,
        )
        await self._mirror(session, "token_usage", {
            "promptTokens": usage.prompt_tokens,
            "completionTokens": usage.completion_tokens,
            "totalTokens": usage.total_tokens,
            "estimatedCost": round(cost, 6),
        })

    async def _mirror(self, session: SessionState, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self._registry.send(session.session_token, event_type, payload)

    async def _send_json(self, websocket, session: SessionState, payload: Dict[str, Any]) -> None:
        try:
            await websocket.send(json.dumps(payload))
        except ConnectionClosed:
            logger.warning("Call connection closed before response could be sent",
                           session=token_prefix(session.session_token), type=payload.get("type"))
