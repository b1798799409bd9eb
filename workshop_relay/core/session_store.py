"""In-memory owner of live call sessions, keyed by session token."""

import asyncio
from typing import Dict, Optional

from prometheus_client import Gauge

from ..logging_config import get_logger, token_prefix
from .models import SessionState

logger = get_logger(__name__)

_ACTIVE_CALLS = Gauge(
    "relay_active_calls",
    "Number of call connections with live session state",
)


class SessionStore:
    """Process-local collection of SessionState objects.

    Created once by the server and handed to the components that need it, so
    tests can build an isolated store per case.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionState] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: SessionState) -> None:
        async with self._lock:
            if session.session_token in self._sessions:
                logger.warning("Replacing live session for token",
                               session=token_prefix(session.session_token))
            self._sessions[session.session_token] = session
            _ACTIVE_CALLS.set(len(self._sessions))

    async def get(self, session_token: str) -> Optional[SessionState]:
        async with self._lock:
            return self._sessions.get(session_token)

    async def remove(self, session: SessionState) -> bool:
        """Drop ``session`` if it is still the registered one for its token."""
        async with self._lock:
            current = self._sessions.get(session.session_token)
            if current is not session:
                return False
            del self._sessions[session.session_token]
            _ACTIVE_CALLS.set(len(self._sessions))
            return True

    def count(self) -> int:
        return len(self._sessions)
