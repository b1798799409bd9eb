"""
Exception hierarchy for the relay.

Only routing errors and configuration-lookup errors end a connection. The
others are recovered inside the call: credential-exchange errors fall back to
the default secret, and model/tool errors become a spoken apology.
"""

from typing import Optional

# WebSocket close codes (RFC 6455)
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


class RelayError(Exception):
    """Base class for relay errors."""


class RoutingError(RelayError):
    """Inbound connection path could not be classified."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConfigLookupError(RelayError):
    """Tenant configuration could not be loaded (storage or network failure)."""


class CredentialExchangeError(RelayError):
    """Secret could not be obtained through the observer connection."""


class CredentialUnavailableError(CredentialExchangeError):
    """No open observer connection is registered for the session token."""


class CredentialTimeoutError(CredentialExchangeError):
    """Observer did not answer the credential request in time."""


class LLMError(RelayError):
    """Language-model request failed."""

    def __init__(self, message: str, status: Optional[int] = None, body_preview: str = ""):
        super().__init__(message)
        self.status = status
        self.body_preview = body_preview
