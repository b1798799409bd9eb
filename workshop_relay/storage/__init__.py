"""Tenant configuration sources: local SQLite store and the settings service."""

from .config_store import StudentConfigStore
from .resolver import TenantConfigResolver
from .settings_client import SettingsClient

__all__ = ["SettingsClient", "StudentConfigStore", "TenantConfigResolver"]
