"""
Tunnel registry: one live observer connection per session token.

Observers ("tunnels") are secondary WebSocket connections opened by the
student's browser. The relay mirrors call progress to them and uses them to
ask for a secret on demand. A newer observer for the same token replaces the
older one; the older connection is left to close on its own.

All mutating operations are plain synchronous methods. They never yield to
the event loop, so a lookup can never observe a half-applied register or
unregister.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from prometheus_client import Gauge
from websockets.protocol import State

from ..logging_config import get_logger, token_prefix

logger = get_logger(__name__)

_ACTIVE_TUNNELS = Gauge(
    "relay_active_tunnels",
    "Number of registered observer (tunnel) connections",
)

MessageListener = Callable[[Dict[str, Any]], None]


class ObserverChannel:
    """Handle for one observer connection.

    Inbound messages are read by the tunnel handler's loop and fanned out to
    listeners registered here (e.g. a pending credential request).
    """

    def __init__(self, session_token: str, websocket: Any):
        self.session_token = session_token
        self.websocket = websocket
        self._listeners: List[MessageListener] = []

    @property
    def is_open(self) -> bool:
        return getattr(self.websocket, "state", None) is State.OPEN

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def dispatch(self, message: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error("Observer message listener failed",
                             session=token_prefix(self.session_token), error=str(e), exc_info=True)

    async def send_json(self, payload: Mapping[str, Any]) -> None:
        await self.websocket.send(json.dumps(payload))


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class TunnelRegistry:
    """Maps session token -> the single active ObserverChannel."""

    def __init__(self) -> None:
        self._channels: Dict[str, ObserverChannel] = {}

    def register(self, session_token: str, channel: ObserverChannel) -> Optional[ObserverChannel]:
        """Insert or replace the observer for ``session_token``.

        Returns the replaced channel, if any. It is not closed here.
        """
        previous = self._channels.get(session_token)
        self._channels[session_token] = channel
        _ACTIVE_TUNNELS.set(len(self._channels))
        if previous is not None and previous is not channel:
            logger.info("Observer replaced for session", session=token_prefix(session_token))
        else:
            logger.info("Observer registered", session=token_prefix(session_token))
        return previous

    def unregister(self, session_token: str, channel: ObserverChannel) -> bool:
        """Remove the entry only if ``channel`` is still the registered one."""
        current = self._channels.get(session_token)
        if current is not channel:
            logger.debug("Ignoring stale observer unregister", session=token_prefix(session_token))
            return False
        del self._channels[session_token]
        _ACTIVE_TUNNELS.set(len(self._channels))
        logger.info("Observer unregistered", session=token_prefix(session_token))
        return True

    def lookup(self, session_token: str) -> Optional[ObserverChannel]:
        """Return the open observer for ``session_token`` or None."""
        channel = self._channels.get(session_token)
        if channel is None or not channel.is_open:
            return None
        return channel

    def count(self) -> int:
        return len(self._channels)

    async def send(self, session_token: str, event_type: str, payload: Optional[Mapping[str, Any]] = None) -> bool:
        """Mirror an event to the observer. Best effort: never raises.

        Returns True when the event was handed to the connection.
        """
        channel = self.lookup(session_token)
        if channel is None:
            return False
        message = {"type": event_type, "timestamp": _timestamp()}
        if payload:
            message.update(payload)
        try:
            await channel.send_json(message)
            return True
        except Exception as e:
            logger.warning("Failed to mirror event to observer",
                           session=token_prefix(session_token), event_type=event_type, error=str(e))
            return False
