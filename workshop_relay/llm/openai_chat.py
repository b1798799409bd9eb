"""
OpenAI Chat Completions client used for turn resolution.

The secret is supplied per request because each call may run on a different
tenant's key. No retries: a failure surfaces as LLMError and the engine
answers the caller with an apology.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp
from prometheus_client import Counter

from ..config import OpenAIConfig
from ..errors import LLMError
from ..logging_config import get_logger

logger = get_logger(__name__)

_LLM_REQUESTS = Counter(
    "relay_llm_requests_total",
    "Chat completion requests by outcome",
    ["outcome"],
)


def _make_http_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "User-Agent": "workshop-relay/1.0",
    }


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def parse_arguments(self) -> Dict[str, Any]:
        """Decode the JSON argument string; raises ValueError when malformed."""
        if not self.arguments:
            return {}
        parsed = json.loads(self.arguments)
        if not isinstance(parsed, dict):
            raise ValueError(f"Tool arguments for {self.name} must be a JSON object")
        return parsed


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, usage: Optional[Dict[str, Any]]) -> "TokenUsage":
        usage = usage or {}
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = int(usage.get("total_tokens") or (prompt + completion))
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def estimate_cost(self, prompt_price_per_million: float, completion_price_per_million: float) -> float:
        """Cost in USD for this usage at the given per-million-token prices."""
        return (
            self.prompt_tokens * prompt_price_per_million
            + self.completion_tokens * completion_price_per_million
        ) / 1_000_000


@dataclass
class ChatCompletion:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    message: Dict[str, Any] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)


class OpenAIChatClient:
    """Thin aiohttp wrapper around ``POST {chat_base_url}/chat/completions``."""

    def __init__(
        self,
        config: OpenAIConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self._config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def url(self) -> str:
        return self._config.chat_base_url.rstrip("/") + "/chat/completions"

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def build_payload(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._config.chat_model,
            "messages": list(messages),
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = "auto"
        return payload

    async def complete(
        self,
        api_key: Optional[str],
        messages: Sequence[Dict[str, Any]],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        *,
        call_id: Optional[str] = None,
    ) -> ChatCompletion:
        if not api_key:
            _LLM_REQUESTS.labels(outcome="error").inc()
            raise LLMError("No API key available for chat completion")

        await self._ensure_session()
        payload = self.build_payload(messages, tools)

        logger.debug(
            "OpenAI chat completion request",
            call_id=call_id,
            model=payload["model"],
            messages=len(payload["messages"]),
            tools_count=len(payload.get("tools", [])),
        )

        try:
            async with self._session.post(
                self.url,
                json=payload,
                headers=_make_http_headers(api_key),
                timeout=aiohttp.ClientTimeout(total=self._config.response_timeout_sec),
            ) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _LLM_REQUESTS.labels(outcome="error").inc()
            logger.error("OpenAI chat completion transport failure", call_id=call_id, error=str(e))
            raise LLMError(f"Chat completion request failed: {e}") from e

        if status >= 400:
            _LLM_REQUESTS.labels(outcome="error").inc()
            logger.error(
                "OpenAI chat completion failed",
                call_id=call_id,
                status=status,
                body_preview=body[:128],
            )
            raise LLMError(f"Chat completion returned HTTP {status}", status=status, body_preview=body[:128])

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            _LLM_REQUESTS.labels(outcome="error").inc()
            raise LLMError("Chat completion returned invalid JSON", status=status, body_preview=body[:128]) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            _LLM_REQUESTS.labels(outcome="error").inc()
            logger.warning("OpenAI chat completion returned no choices", call_id=call_id)
            raise LLMError("Chat completion returned no choices", status=status, body_preview=body[:128])

        message = choices[0].get("message") or {}
        content = message.get("content") or ""
        tool_calls = []
        for tc in message.get("tool_calls") or []:
            func = tc.get("function") or {}
            tool_calls.append(ToolCall(
                id=tc.get("id", ""),
                name=func.get("name", ""),
                arguments=func.get("arguments") or "{}",
            ))

        usage = TokenUsage.from_payload(data.get("usage"))
        _LLM_REQUESTS.labels(outcome="success").inc()
        logger.info(
            "OpenAI chat completion received",
            call_id=call_id,
            model=payload["model"],
            preview=content[:80],
            tool_calls=len(tool_calls),
            total_tokens=usage.total_tokens,
        )
        return ChatCompletion(content=content, tool_calls=tool_calls, message=message, usage=usage)
