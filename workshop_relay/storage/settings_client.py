"""
HTTP client for the workshop settings service.

``GET {base_url}{path}?sessionToken=<token>`` returns::

    {"success": true, "settings": {"studentName": ..., "openaiApiKey": ...,
     "systemPrompt": ..., "tools": [...], "voice": ..., "greeting": ...}}

Anything other than a well-formed success payload means "no configuration".
Transport failures are lookup errors.
"""

import asyncio
import json
from typing import Callable, Dict, Optional

import aiohttp

from ..config import SettingsApiConfig
from ..core.models import TenantConfig
from ..errors import ConfigLookupError
from ..logging_config import get_logger, token_prefix

logger = get_logger(__name__)


class SettingsClient:
    """Fetches tenant settings from the sibling web app."""

    def __init__(
        self,
        config: SettingsApiConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        if not config.base_url:
            raise ValueError("SettingsClient requires settings_api.base_url")
        self._config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def url(self) -> str:
        return self._config.base_url.rstrip("/") + "/" + self._config.path.lstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": "workshop-relay/1.0"}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"
        return headers

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch(self, session_token: str) -> Optional[TenantConfig]:
        """Return the tenant configuration or None when the service has none."""
        await self._ensure_session()
        session = token_prefix(session_token)
        try:
            async with self._session.get(
                self.url,
                params={"sessionToken": session_token},
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self._config.timeout_sec),
            ) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Settings service request failed", session=session, error=str(e))
            raise ConfigLookupError(f"Settings service unreachable: {e}") from e

        if status >= 400:
            logger.warning("Settings service returned error status", session=session,
                           status=status, body_preview=body[:128])
            return None

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Settings service returned non-JSON body", session=session,
                           body_preview=body[:128])
            return None

        if not isinstance(payload, dict) or payload.get("success") is not True:
            logger.info("Settings service has no configuration for session", session=session)
            return None
        settings = payload.get("settings")
        if not isinstance(settings, dict):
            logger.warning("Settings payload missing 'settings' object", session=session)
            return None

        return TenantConfig.from_settings(session_token, settings)
