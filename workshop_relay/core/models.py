"""
Core data models for the relay.

Typed structures for the per-call state: the tenant configuration snapshot,
call metadata, conversation turns and the session that ties them together.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode_json_field(value: Any, default, field_name: str):
    """Accept either a decoded value or its JSON text; bad JSON yields ``default``."""
    if value is None or value == "":
        return default
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse stored JSON field", field=field_name, error=str(e))
            return default
    if not isinstance(value, type(default)):
        logger.error("Stored JSON field has unexpected type", field=field_name,
                     value_type=type(value).__name__)
        return default
    return value


@dataclass(frozen=True)
class TenantConfig:
    """Read-only configuration snapshot for one call, captured at call start."""
    session_token: str
    student_name: Optional[str] = None
    openai_api_key: Optional[str] = None
    system_prompt: Optional[str] = None
    tools: Tuple[Dict[str, Any], ...] = ()
    voice_settings: Mapping[str, Any] = field(default_factory=dict)
    greeting: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.student_name or "Unknown"

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "TenantConfig":
        """Build from a storage row (``tools``/``voice_settings`` may be JSON text)."""
        tools = _decode_json_field(record.get("tools"), [], "tools")
        voice_settings = _decode_json_field(record.get("voice_settings"), {}, "voice_settings")
        return cls(
            session_token=record["session_token"],
            student_name=record.get("student_name"),
            openai_api_key=record.get("openai_api_key") or None,
            system_prompt=record.get("system_prompt") or None,
            tools=tuple(t for t in tools if isinstance(t, dict)),
            voice_settings=voice_settings,
            greeting=record.get("greeting") or None,
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )

    @classmethod
    def from_settings(cls, session_token: str, settings: Mapping[str, Any]) -> "TenantConfig":
        """Build from the settings service payload (camelCase keys)."""
        tools = _decode_json_field(settings.get("tools"), [], "tools")
        voice = settings.get("voice")
        if isinstance(voice, str):
            voice_settings = {"voice": voice}
        else:
            voice_settings = _decode_json_field(voice, {}, "voice")
        return cls(
            session_token=session_token,
            student_name=settings.get("studentName"),
            openai_api_key=settings.get("openaiApiKey") or None,
            system_prompt=settings.get("systemPrompt") or None,
            tools=tuple(t for t in tools if isinstance(t, dict)),
            voice_settings=voice_settings,
            greeting=settings.get("greeting") or None,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "session_token": self.session_token,
            "student_name": self.student_name,
            "openai_api_key": self.openai_api_key,
            "system_prompt": self.system_prompt,
            "tools": json.dumps(list(self.tools)),
            "voice_settings": json.dumps(dict(self.voice_settings)),
            "greeting": self.greeting,
        }


@dataclass
class CallMetadata:
    """Call details, filled in as events arrive and never cleared."""
    session_token: str
    student_name: Optional[str] = None
    session_id: Optional[str] = None
    call_sid: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    direction: Optional[str] = None
    start_time: datetime = field(default_factory=utcnow)

    def apply_setup(self, event: Mapping[str, Any]) -> None:
        for attr, key in (
            ("session_id", "sessionId"),
            ("call_sid", "callSid"),
            ("from_number", "from"),
            ("to_number", "to"),
            ("direction", "direction"),
        ):
            value = event.get(key)
            if value is not None:
                setattr(self, attr, value)

    def duration_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return max(0, round((now - self.start_time).total_seconds()))


@dataclass
class ConversationTurn:
    """One message of the conversation history, in model order."""
    role: str
    content: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = self.tool_calls
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        return message


@dataclass
class SessionState:
    """Mutable state for one call connection."""
    tenant: TenantConfig
    metadata: CallMetadata
    history: List[ConversationTurn] = field(default_factory=list)
    resolved_secret: Optional[str] = None
    secret_source: Optional[str] = None  # stored | tunnel | fallback | none

    @classmethod
    def create(cls, tenant: TenantConfig) -> "SessionState":
        return cls(
            tenant=tenant,
            metadata=CallMetadata(session_token=tenant.session_token, student_name=tenant.student_name),
        )

    @property
    def session_token(self) -> str:
        return self.tenant.session_token

    @property
    def secret_resolved(self) -> bool:
        return self.secret_source is not None

    def append(self, turn: ConversationTurn) -> None:
        self.history.append(turn)

    def build_messages(self, system_prompt: str) -> List[Dict[str, Any]]:
        return [{"role": ROLE_SYSTEM, "content": system_prompt}] + [t.to_message() for t in self.history]
