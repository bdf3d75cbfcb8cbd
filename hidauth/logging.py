from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of field names whose string values are masked before rendering
_PII_KEYS = frozenset(
    {"password", "secret", "token", "api_key", "authorization", "email", "bewit"}
)
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id used to stitch together one request's log lines."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    # first and last two characters survive for debugging
    return value[:2] + "***" + value[-2:]


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _PII_KEYS)


def _scrub(fields: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in fields.items():
        if isinstance(value, dict):
            fields[key] = _scrub(dict(value))
        elif isinstance(value, str) and len(value) > 4 and _is_sensitive(key):
            fields[key] = _mask(value)
    return fields


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and contact details, including inside nested dicts.

    The ``event`` name itself is never touched so events such as
    ``token_blacklisted`` stay searchable.
    """
    event = event_dict.pop("event", None)
    _scrub(event_dict)
    if event is not None:
        event_dict["event"] = event
    return event_dict


def configure_logging(level: str = "INFO", *, renderer: str = "json") -> None:
    """Install the structlog pipeline.

    ``renderer`` is ``"json"`` for machine-readable output or ``"console"``
    for coloured local output; tracebacks are only flattened into the JSON
    form.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if renderer == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _renderer_from_env() -> str:
    if os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY:
        return "console"
    if os.getenv("LOG_JSON", "true").lower() not in _TRUTHY:
        return "console"
    return "json"


configure_logging(os.getenv("LOG_LEVEL", "INFO"), renderer=_renderer_from_env())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_auth_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Emit an audit-trail entry for an authentication decision."""
    log = logger or get_logger("audit")
    log.info(event, audit=True, **fields)
