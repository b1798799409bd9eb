"""
Security-critical configuration injection.

SECURITY POLICY:
- The default OpenAI secret and the settings-endpoint token come from
  environment variables only; values found in YAML are discarded.
- Plain deployment settings (host, port, paths) may be overridden from the
  environment for container platforms that only inject env vars.
"""

import os
from typing import Any, Dict


def _is_nonempty_string(val: Any) -> bool:
    return isinstance(val, str) and val.strip() != ""


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    block = config_data.get(name)
    if not isinstance(block, dict):
        block = {}
    config_data[name] = block
    return block


def inject_secrets(config_data: Dict[str, Any]) -> None:
    """
    Inject secrets from environment variables ONLY.

    Environment variables:
    - OPENAI_API_KEY: server-wide fallback secret for the language model
    - SETTINGS_API_TOKEN: optional bearer token for the settings endpoint

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    openai_block = _section(config_data, 'openai')
    api_key = os.getenv('OPENAI_API_KEY')
    openai_block['api_key'] = api_key.strip() if _is_nonempty_string(api_key) else None

    settings_block = _section(config_data, 'settings_api')
    api_token = os.getenv('SETTINGS_API_TOKEN')
    settings_block['api_token'] = api_token.strip() if _is_nonempty_string(api_token) else None


def inject_env_overrides(config_data: Dict[str, Any]) -> None:
    """
    Apply non-secret overrides from the environment.

    Environment variables:
    - HOST, PORT: listener address
    - CONFIG_DB_PATH: local tenant configuration database
    - SETTINGS_BASE_URL: base URL of the settings service
    """
    server_block = _section(config_data, 'server')
    if _is_nonempty_string(os.getenv('HOST')):
        server_block['host'] = os.getenv('HOST').strip()
    if _is_nonempty_string(os.getenv('PORT')):
        server_block['port'] = int(os.getenv('PORT'))

    if _is_nonempty_string(os.getenv('CONFIG_DB_PATH')):
        _section(config_data, 'storage')['db_path'] = os.getenv('CONFIG_DB_PATH').strip()

    if _is_nonempty_string(os.getenv('SETTINGS_BASE_URL')):
        _section(config_data, 'settings_api')['base_url'] = os.getenv('SETTINGS_BASE_URL').strip()
