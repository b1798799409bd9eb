"""
Credential exchange over the observer connection.

When a tenant has no stored secret the relay asks the student's browser for
one:

    relay -> observer   {"type": "credential_request", "requestId": "..."}
    observer -> relay   {"type": "credential_response", "requestId": "...", "secret": "..."}

A request resolves at most once. Responses with another (or no) requestId are
ignored, as is any response that arrives after the timeout because the
listener has already been removed by then.

Concurrent requests for the same token share one in-flight exchange instead of
sending a second credential_request.
"""

import asyncio
import secrets
import time
from typing import Callable, Dict, Optional

from prometheus_client import Counter

from ..errors import CredentialTimeoutError, CredentialUnavailableError
from ..logging_config import get_logger, token_prefix
from .tunnel_registry import ObserverChannel, TunnelRegistry

logger = get_logger(__name__)

CREDENTIAL_REQUEST = "credential_request"
CREDENTIAL_RESPONSE = "credential_response"

_CREDENTIAL_REQUESTS = Counter(
    "relay_credential_requests_total",
    "Credential exchanges by outcome",
    ["outcome"],
)


def generate_request_id() -> str:
    """Millisecond timestamp plus a random suffix."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _consume_outcome(task: "asyncio.Task") -> None:
    # Waiters may all have been cancelled; mark the result as retrieved.
    if not task.cancelled():
        task.exception()


class CredentialExchange:
    """Fetches secrets from observers on demand."""

    def __init__(
        self,
        registry: TunnelRegistry,
        timeout_sec: float = 10.0,
        request_id_factory: Callable[[], str] = generate_request_id,
    ):
        self._registry = registry
        self._timeout_sec = timeout_sec
        self._request_id_factory = request_id_factory
        self._in_flight: Dict[str, asyncio.Task] = {}

    @property
    def timeout_sec(self) -> float:
        return self._timeout_sec

    def pending_count(self) -> int:
        return len(self._in_flight)

    async def request_secret(self, session_token: str) -> Optional[str]:
        """Ask the observer for ``session_token`` for its secret.

        Returns:
            The secret, or None if the observer answered without one.

        Raises:
            CredentialUnavailableError: no open observer is registered
            CredentialTimeoutError: the observer did not answer in time
        """
        in_flight = self._in_flight.get(session_token)
        if in_flight is not None and not in_flight.done():
            logger.info("Joining in-flight credential request", session=token_prefix(session_token))
            return await asyncio.shield(in_flight)

        channel = self._registry.lookup(session_token)
        if channel is None:
            _CREDENTIAL_REQUESTS.labels(outcome="unavailable").inc()
            raise CredentialUnavailableError("No open observer connection for session")

        task = asyncio.create_task(self._exchange(session_token, channel))
        task.add_done_callback(_consume_outcome)
        self._in_flight[session_token] = task
        return await asyncio.shield(task)

    async def _exchange(self, session_token: str, channel: ObserverChannel) -> Optional[str]:
        request_id = self._request_id_factory()
        loop = asyncio.get_running_loop()
        response: asyncio.Future = loop.create_future()

        def on_message(message: dict) -> None:
            if message.get("type") != CREDENTIAL_RESPONSE:
                return
            if message.get("requestId") != request_id:
                logger.debug("Ignoring credential response for another request",
                             session=token_prefix(session_token))
                return
            if not response.done():
                response.set_result(message.get("secret"))

        channel.add_listener(on_message)
        try:
            try:
                await channel.send_json({"type": CREDENTIAL_REQUEST, "requestId": request_id})
            except Exception as e:
                _CREDENTIAL_REQUESTS.labels(outcome="unavailable").inc()
                raise CredentialUnavailableError(f"Failed to send credential request: {e}") from e

            logger.info("Credential requested from observer",
                        session=token_prefix(session_token), request_id=request_id)
            try:
                secret = await asyncio.wait_for(response, timeout=self._timeout_sec)
            except asyncio.TimeoutError:
                _CREDENTIAL_REQUESTS.labels(outcome="timeout").inc()
                raise CredentialTimeoutError(
                    f"Credential request timed out after {self._timeout_sec}s (browser may be closed)"
                )
        finally:
            channel.remove_listener(on_message)
            if self._in_flight.get(session_token) is asyncio.current_task():
                del self._in_flight[session_token]

        _CREDENTIAL_REQUESTS.labels(outcome="success").inc()
        if not isinstance(secret, str) or not secret.strip():
            logger.warning("Observer answered credential request without a secret",
                           session=token_prefix(session_token))
            return None
        return secret.strip()
