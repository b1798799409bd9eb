"""
Configuration for the workshop relay.

Settings come from a YAML file (with environment expansion), secrets come from
the environment only, and the merged result is validated with Pydantic v2.
"""

import os
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from .loaders import load_yaml_with_env_expansion, resolve_config_path
from .security import inject_env_overrides, inject_secrets

logger = structlog.get_logger(__name__)


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    call_path_prefix: str = Field(default="/ws")
    tunnel_path_prefix: str = Field(default="/tunnel")
    ping_interval_sec: float = Field(default=20.0)
    ping_timeout_sec: float = Field(default=20.0)


class OpenAIConfig(BaseModel):
    """Chat Completions defaults; ``api_key`` is the server-wide fallback secret."""
    api_key: Optional[str] = None
    chat_base_url: str = Field(default="https://api.openai.com/v1")
    chat_model: str = Field(default="gpt-4o-mini")
    max_tokens: int = Field(default=150)
    temperature: float = Field(default=0.7)
    response_timeout_sec: float = Field(default=30.0)
    # USD per million tokens, used for the cost estimate mirrored to observers
    prompt_price_per_million: float = Field(default=0.15)
    completion_price_per_million: float = Field(default=0.60)


class CredentialConfig(BaseModel):
    request_timeout_sec: float = Field(default=10.0)


class StorageConfig(BaseModel):
    enabled: bool = Field(default=True)
    db_path: str = Field(default="data/student_configs.db")


class SettingsApiConfig(BaseModel):
    base_url: Optional[str] = None
    path: str = Field(default="/api/student-settings")
    timeout_sec: float = Field(default=5.0)
    api_token: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = Field(default="info")
    format: str = Field(default="json")


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    settings_api: SettingsApiConfig = Field(default_factory=SettingsApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str = "config/relay.yaml") -> AppConfig:
    """
    Load and validate configuration.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root)

    Returns:
        Validated AppConfig instance

    Raises:
        yaml.YAMLError: If the file exists but cannot be parsed
        pydantic.ValidationError: If merged values fail validation
    """
    path = resolve_config_path(path)
    try:
        config_data = load_yaml_with_env_expansion(path)
    except FileNotFoundError:
        logger.warning("Configuration file not found; using defaults", path=path)
        config_data = {}

    inject_secrets(config_data)
    inject_env_overrides(config_data)

    return AppConfig(**config_data)


def validate_production_config(config: AppConfig) -> tuple[list[str], list[str]]:
    """Validate configuration before serving.

    Returns:
        (errors, warnings): errors block startup, warnings are only logged.
    """
    errors = []
    warnings = []

    call_prefix = config.server.call_path_prefix
    tunnel_prefix = config.server.tunnel_path_prefix
    for name, prefix in (("call_path_prefix", call_prefix), ("tunnel_path_prefix", tunnel_prefix)):
        if not prefix.startswith("/") or prefix.rstrip("/") == "":
            errors.append(f"server.{name} must be a non-root path starting with '/': {prefix!r}")
    if call_prefix.rstrip("/") == tunnel_prefix.rstrip("/"):
        errors.append("server.call_path_prefix and server.tunnel_path_prefix must differ")

    if not config.storage.enabled and not config.settings_api.base_url:
        errors.append("No tenant configuration source (enable storage or set settings_api.base_url)")

    if not config.openai.api_key:
        warnings.append("OPENAI_API_KEY not set; calls without a student key will fail to reach the model")

    if (os.getenv("LOG_LEVEL") or config.logging.level).lower() == "debug":
        warnings.append("Debug logging enabled (security/performance risk in production)")

    if config.credentials.request_timeout_sec <= 0:
        errors.append("credentials.request_timeout_sec must be positive")

    return errors, warnings


__all__ = [
    "AppConfig",
    "CredentialConfig",
    "LoggingConfig",
    "OpenAIConfig",
    "ServerConfig",
    "SettingsApiConfig",
    "StorageConfig",
    "load_config",
    "validate_production_config",
]
