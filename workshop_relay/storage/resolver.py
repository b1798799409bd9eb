"""Looks up the tenant configuration for a session token across sources."""

from typing import Optional

from ..core.models import TenantConfig
from ..logging_config import get_logger, token_prefix
from .config_store import StudentConfigStore
from .settings_client import SettingsClient

logger = get_logger(__name__)


class TenantConfigResolver:
    """Local store first, then the settings service.

    ``resolve`` returns None when no source knows the token and lets
    ConfigLookupError from either source propagate.
    """

    def __init__(
        self,
        store: Optional[StudentConfigStore] = None,
        settings_client: Optional[SettingsClient] = None,
    ):
        self._store = store
        self._settings_client = settings_client

    async def resolve(self, session_token: str) -> Optional[TenantConfig]:
        if self._store is not None:
            config = await self._store.get(session_token)
            if config is not None:
                logger.debug("Tenant config loaded from local store", session=token_prefix(session_token))
                return config

        if self._settings_client is not None:
            config = await self._settings_client.fetch(session_token)
            if config is not None:
                logger.debug("Tenant config loaded from settings service", session=token_prefix(session_token))
                return config

        return None

    async def close(self) -> None:
        if self._settings_client is not None:
            await self._settings_client.close()
