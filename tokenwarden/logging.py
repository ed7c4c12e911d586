"""structlog setup shared by every tokenwarden module.

Configured once, on import. Output is JSON lines unless ``LOG_DEV_MODE`` or
``LOG_JSON=false`` asks for the console renderer. Each entry carries the
request's correlation id and never a raw secret.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def _add_correlation_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    value = correlation_id_var.get()
    if value:
        event["correlation_id"] = value
    return event


# Substrings that mark a field as carrying a credential
_PII_KEYS = frozenset(
    {
        "password",
        "secret",
        "token",
        "recovery",
        "verification",
        "authorization",
    }
)


def _redact_pii(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential-looking string fields down to their first and last two chars.

    Keys ending in ``_id`` are identifiers, not secrets, and pass through.
    """
    for key, value in list(event.items()):
        name = key.lower()
        if name.endswith("_id") or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in name for marker in _PII_KEYS):
            event[key] = f"{value[:2]}***{value[-2:]}"
    return event


def _configure(level: str, console: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure(
    level=os.getenv("LOG_LEVEL", "INFO"),
    console=(
        os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY
        or os.getenv("LOG_JSON", "true").lower() not in _TRUTHY
    ),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
