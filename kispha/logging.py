from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose values never reach the log verbatim
_REDACTED_KEYS = ("secret", "password", "token", "contact", "email", "authorization")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when none is given."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    return value[:2] + "***" + value[-2:] if len(value) > 4 else "***"


def _redact_identity_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask secrets, tokens and contact addresses, keeping 2 chars each side."""
    for key, value in event_dict.items():
        if isinstance(value, str) and value and any(m in key.lower() for m in _REDACTED_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(log_level: str = "INFO", console: bool = False) -> None:
    """Install the structlog pipeline.

    Events are JSON lines unless ``console`` is set, in which case the
    colored development renderer is used.
    """
    renderers = (
        [structlog.dev.ConsoleRenderer(colors=True)]
        if console
        else [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _redact_identity_fields,
            *renderers,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    console=(
        os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY
        or os.getenv("LOG_JSON", "true").lower() not in _TRUTHY
    ),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
