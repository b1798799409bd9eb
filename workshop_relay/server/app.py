"""
Relay server: wires the components together and serves them.

One websockets server handles both call and observer connections. Plain HTTP
requests on the same port are answered by ``process_request`` (health and
Prometheus metrics) before any WebSocket handshake happens.
"""

import json
import time
from http import HTTPStatus
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from websockets.asyncio.server import Server, serve
from websockets.datastructures import Headers
from websockets.http11 import Response

from ..config import AppConfig
from ..core.credential_exchange import CredentialExchange
from ..core.session_store import SessionStore
from ..core.tunnel_registry import TunnelRegistry
from ..engine import ConversationRelayEngine
from ..llm import OpenAIChatClient
from ..logging_config import get_logger
from ..storage import SettingsClient, StudentConfigStore, TenantConfigResolver
from ..tools import ToolExecutor, ToolRegistry
from .router import ConnectionRouter
from .tunnel_handler import TunnelHandler

logger = get_logger(__name__)

HEALTH_SERVICE_NAME = "workshop-websocket-server"


def _response(status: HTTPStatus, body: bytes, content_type: str) -> Response:
    headers = Headers([
        ("Content-Type", content_type),
        ("Content-Length", str(len(body))),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, body)


class RelayServer:
    """Owns every long-lived component of one relay process."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.started_at = time.monotonic()

        self.tunnel_registry = TunnelRegistry()
        self.session_store = SessionStore()
        self.credential_exchange = CredentialExchange(
            self.tunnel_registry, timeout_sec=config.credentials.request_timeout_sec,
        )

        self.config_store: Optional[StudentConfigStore] = None
        if config.storage.enabled:
            self.config_store = StudentConfigStore(config.storage.db_path)
        settings_client = SettingsClient(config.settings_api) if config.settings_api.base_url else None
        self.config_resolver = TenantConfigResolver(self.config_store, settings_client)

        self.llm_client = OpenAIChatClient(config.openai)
        self.tool_registry = ToolRegistry()
        self.tool_executor = ToolExecutor(self.tool_registry)

        self.engine = ConversationRelayEngine(
            registry=self.tunnel_registry,
            credential_exchange=self.credential_exchange,
            llm_client=self.llm_client,
            tool_executor=self.tool_executor,
            session_store=self.session_store,
            openai_config=config.openai,
        )
        self.tunnel_handler = TunnelHandler(self.tunnel_registry, self.session_store)
        self.router = ConnectionRouter(
            engine=self.engine,
            tunnel_handler=self.tunnel_handler,
            config_resolver=self.config_resolver,
            call_path_prefix=config.server.call_path_prefix,
            tunnel_path_prefix=config.server.tunnel_path_prefix,
        )
        self._server: Optional[Server] = None

    def health_payload(self) -> dict:
        return {
            "status": "ok",
            "service": HEALTH_SERVICE_NAME,
            "uptime": round(time.monotonic() - self.started_at, 3),
            "active_calls": self.session_store.count(),
            "active_tunnels": self.tunnel_registry.count(),
        }

    def process_request(self, connection, request) -> Optional[Response]:
        """Answer plain HTTP requests; let WebSocket upgrades through."""
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None

        path = request.path.split("?", 1)[0]
        if path in ("/", "/health"):
            body = json.dumps(self.health_payload()).encode("utf-8")
            return _response(HTTPStatus.OK, body, "application/json")
        if path == "/metrics":
            return _response(HTTPStatus.OK, generate_latest(), CONTENT_TYPE_LATEST)
        return _response(HTTPStatus.NOT_FOUND, b"Not Found", "text/plain; charset=utf-8")

    async def start(self) -> None:
        if self.config_store is not None:
            await self.config_store.initialize()

        server_cfg = self.config.server
        self._server = await serve(
            self.router.handle,
            server_cfg.host,
            server_cfg.port,
            process_request=self.process_request,
            ping_interval=server_cfg.ping_interval_sec,
            ping_timeout=server_cfg.ping_timeout_sec,
        )
        logger.info(
            "Workshop relay listening",
            host=server_cfg.host,
            port=server_cfg.port,
            call_path=f"{server_cfg.call_path_prefix}/{{sessionToken}}",
            tunnel_path=f"{server_cfg.tunnel_path_prefix}/{{sessionToken}}",
            default_key_configured=bool(self.config.openai.api_key),
        )

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.llm_client.close()
        await self.config_resolver.close()
        logger.info("Workshop relay stopped")
