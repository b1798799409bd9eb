"""
Structured Logging Configuration

Configures structlog on top of stdlib logging for the relay. Every record
carries a timestamp, level, logger name, the service name and, when one is
bound, the correlation id of the connection being handled (a session-token
prefix). Output is JSON by default or a colorized console format.
"""

import contextvars
import logging
import os
import sys
from typing import Optional

import structlog
from structlog import dev as structlog_dev

SERVICE_NAME = "workshop-relay"

# One value per connection task; asyncio copies the context into each task.
correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)

SENSITIVE_KEYS = {
    'api_key', 'api_keys', 'apikey', 'api-key',
    'token', 'access_token', 'auth_token', 'bearer', 'api_token',
    'password', 'passwd', 'pwd',
    'authorization', 'auth',
    'credential', 'credentials', 'secret', 'secrets',
    'private_key', 'client_secret',
}


def token_prefix(session_token: Optional[str], length: int = 8) -> str:
    """Return the loggable prefix of a session token."""
    if not session_token:
        return ""
    return session_token[:length]


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(value: Optional[str]) -> None:
    correlation_id_var.set(value)


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict['correlation_id'] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    event_dict['service'] = SERVICE_NAME
    component = event_dict.get('logger')
    if not component:
        component = getattr(logger, 'name', None) or 'unknown'
    event_dict['component'] = component
    return event_dict


def _is_sensitive(key) -> bool:
    compact = str(key).lower().replace('_', '').replace('-', '')
    for pattern in SENSITIVE_KEYS:
        pattern_compact = pattern.replace('_', '').replace('-', '')
        if compact == pattern_compact or compact.endswith(pattern_compact):
            return True
    return False


def _redact_value(value):
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ''
        # First two characters survive so "sk" style prefixes stay debuggable.
        if len(value) > 4:
            return f"{value[:2]}***REDACTED***"
        return "***REDACTED***"
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    return "***REDACTED***"


def _sanitize(value):
    if isinstance(value, dict):
        return {
            k: (_redact_value(v) if _is_sensitive(k) else _sanitize(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_sanitize(v) if isinstance(v, dict) else v for v in value]
    return value


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact secrets (API keys, tokens, passwords, credentials) from a log event.

    Matching is case-insensitive on the key name, also catches suffixed keys
    such as ``student_password``, and recurses into nested dictionaries.
    """
    return _sanitize(event_dict)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Set up structured logging.

    Environment overrides (optional):
      - LOG_LEVEL: debug|info|warning|error|critical
      - LOG_FORMAT: json|console
      - LOG_COLOR: 0|1 (console only; default: 1)
    """
    log_level = (os.getenv("LOG_LEVEL") or log_level or "INFO").upper()
    log_format = (os.getenv("LOG_FORMAT") or log_format or "json").strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")
    level_value = getattr(logging, log_level, logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_correlation_id,
            sanitize_secrets,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_format == "console":
        renderer = structlog_dev.ConsoleRenderer(colors=log_color)
    else:
        renderer = structlog.processors.JSONRenderer()

    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(processor_formatter)
    root_logger.addHandler(console_handler)

    # Reduce noisy third-party loggers
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
