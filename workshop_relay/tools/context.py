"""
Tool execution context - what a tool can see about the call it runs in.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class ToolExecutionContext:
    """
    Context provided to tools during execution.

    Carries call identity and access to the live session store.
    """

    session_token: str
    call_sid: Optional[str] = None
    student_name: Optional[str] = None

    session_store: Any = None  # SessionStore instance

    async def get_session(self):
        """
        Get the live session for this call.

        Raises:
            RuntimeError: If the store is missing or the session has ended
        """
        if not self.session_store:
            raise RuntimeError("SessionStore not available in context")

        session = await self.session_store.get(self.session_token)
        if not session:
            raise RuntimeError("Session not found for this call")

        return session
