"""Observer (tunnel) connection handler."""

import json

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from ..core.session_store import SessionStore
from ..core.tunnel_registry import ObserverChannel, TunnelRegistry
from ..logging_config import get_logger, token_prefix

logger = get_logger(__name__)


class TunnelHandler:
    """Registers the observer, then reads its messages until it closes.

    This loop is the only reader of the observer socket. Parsed messages are
    dispatched to listeners on the ObserverChannel (a pending credential
    request, for example).
    """

    def __init__(self, registry: TunnelRegistry, session_store: SessionStore):
        self._registry = registry
        self._sessions = session_store

    async def handle(self, websocket, session_token: str) -> None:
        channel = ObserverChannel(session_token, websocket)
        self._registry.register(session_token, channel)
        try:
            call_active = await self._sessions.get(session_token) is not None
            await self._registry.send(session_token, "tunnel_connected", {
                "sessionToken": token_prefix(session_token),
                "callActive": call_active,
                "message": "Tunnel connected",
            })

            async for message in websocket:
                self._on_message(channel, message)
        except ConnectionClosedOK:
            pass
        except ConnectionClosedError as e:
            logger.warning("Observer connection error", session=token_prefix(session_token), error=str(e))
        finally:
            self._registry.unregister(session_token, channel)

    def _on_message(self, channel: ObserverChannel, raw) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON from observer", session=token_prefix(channel.session_token), error=str(e))
            return
        if not isinstance(message, dict):
            logger.warning("Observer message is not a JSON object", session=token_prefix(channel.session_token))
            return
        logger.debug("Observer message", session=token_prefix(channel.session_token), type=message.get("type"))
        channel.dispatch(message)
