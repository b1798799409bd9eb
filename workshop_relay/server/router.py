"""
Connection router.

Every inbound WebSocket is classified by its request path:

    {call_path_prefix}/{sessionToken}     -> call connection (ConversationRelay)
    {tunnel_path_prefix}/{sessionToken}   -> observer connection

The token is the last path segment with any query string removed. The check
is purely syntactic; whether the token names a real tenant is decided later by
the configuration lookup.
"""

from dataclasses import dataclass
from urllib.parse import urlsplit

from prometheus_client import Counter

from ..errors import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_POLICY_VIOLATION,
    ConfigLookupError,
    RoutingError,
)
from ..logging_config import get_logger, set_correlation_id, token_prefix

logger = get_logger(__name__)

KIND_CALL = "call"
KIND_OBSERVER = "observer"

_REJECTED_CONNECTIONS = Counter(
    "relay_rejected_connections_total",
    "Connections closed before being handed to a handler",
    ["reason"],
)


@dataclass(frozen=True)
class RouteDecision:
    kind: str
    session_token: str


def _request_path(websocket) -> str:
    request = getattr(websocket, "request", None)
    return getattr(request, "path", "") or ""


class ConnectionRouter:
    """Classifies connections and hands them to the engine or tunnel handler."""

    def __init__(
        self,
        engine,
        tunnel_handler,
        config_resolver,
        call_path_prefix: str = "/ws",
        tunnel_path_prefix: str = "/tunnel",
    ):
        self._engine = engine
        self._tunnel_handler = tunnel_handler
        self._config_resolver = config_resolver
        self._call_prefix = call_path_prefix.rstrip("/")
        self._tunnel_prefix = tunnel_path_prefix.rstrip("/")

    def classify(self, path: str) -> RouteDecision:
        """
        Map a request path to a RouteDecision.

        Raises:
            RoutingError: If the path matches neither prefix or carries no usable token
        """
        bare_path = urlsplit(path or "").path

        for prefix, kind in ((self._call_prefix, KIND_CALL), (self._tunnel_prefix, KIND_OBSERVER)):
            if bare_path == prefix or bare_path.startswith(prefix + "/"):
                token = bare_path.rsplit("/", 1)[-1]
                keyword = prefix.rsplit("/", 1)[-1]
                if not token or token == keyword:
                    raise RoutingError("Session token required")
                return RouteDecision(kind=kind, session_token=token)

        raise RoutingError("Unknown path")

    async def handle(self, websocket) -> None:
        """Connection handler passed to the websockets server."""
        path = _request_path(websocket)
        try:
            decision = self.classify(path)
        except RoutingError as e:
            set_correlation_id(None)
            logger.warning("Rejected connection", reason=e.reason)
            _REJECTED_CONNECTIONS.labels(reason="routing").inc()
            await websocket.close(CLOSE_POLICY_VIOLATION, e.reason)
            return

        set_correlation_id(token_prefix(decision.session_token))

        if decision.kind == KIND_OBSERVER:
            await self._tunnel_handler.handle(websocket, decision.session_token)
            return

        await self._handle_call(websocket, decision.session_token)

    async def _handle_call(self, websocket, session_token: str) -> None:
        logger.info("Call connection accepted", session=token_prefix(session_token))
        try:
            tenant = await self._config_resolver.resolve(session_token)
        except ConfigLookupError as e:
            logger.error("Error loading tenant config", session=token_prefix(session_token), error=str(e))
            _REJECTED_CONNECTIONS.labels(reason="lookup_error").inc()
            await websocket.close(CLOSE_INTERNAL_ERROR, "Server error")
            return

        if tenant is None:
            logger.warning("No config found for session", session=token_prefix(session_token))
            _REJECTED_CONNECTIONS.labels(reason="not_found").inc()
            await websocket.close(CLOSE_POLICY_VIOLATION, "Invalid session token")
            return

        await self._engine.handle_call(websocket, tenant)

