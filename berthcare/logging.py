from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

SERVICE_NAME = "berthcare-auth"

# Any key containing one of these is replaced outright
_SECRET_MARKERS = (
    "password", "secret", "token", "authorization", "private_key", "digest", "cookie",
)
# Identifiers that merely mention a token and are safe to keep
_PUBLIC_KEYS = frozenset({"token_id", "token_kind", "token_type"})
_MAX_DEVICE_ID = 64
_REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(value: str) -> str:
    """``nurse@example.com`` -> ``n***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _scrub(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, Mapping):
        return {k: _scrub(str(k), v) for k, v in value.items()}
    if lower_key in _PUBLIC_KEYS:
        return value
    if any(marker in lower_key for marker in _SECRET_MARKERS):
        return _REDACTED if value is not None else None
    if "email" in lower_key and isinstance(value, str):
        return mask_email(value)
    if lower_key == "device_id" and isinstance(value, str) and len(value) > _MAX_DEVICE_ID:
        # Client supplied and otherwise unbounded
        return value[:_MAX_DEVICE_ID] + "..."
    return value


def _add_service_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Strip passwords, tokens and signing material; mask emails; nested dicts included."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _scrub(key, event_dict[key])
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline used by every berthcare logger.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per line; otherwise a console renderer
        development_mode: Force the colored console renderer
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service_context,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; entries carry the service name and correlation ID."""
    return structlog.get_logger(name)
