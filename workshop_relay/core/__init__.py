"""Per-call core: session state, tunnel registry and credential exchange."""

from .credential_exchange import CredentialExchange
from .models import CallMetadata, ConversationTurn, SessionState, TenantConfig
from .session_store import SessionStore
from .tunnel_registry import ObserverChannel, TunnelRegistry

__all__ = [
    "CallMetadata",
    "ConversationTurn",
    "CredentialExchange",
    "ObserverChannel",
    "SessionState",
    "SessionStore",
    "TenantConfig",
    "TunnelRegistry",
]
