from __future__ import annotations

import contextlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Mapping, Optional

import structlog

# One id per login attempt or operator run; every event of that unit carries it
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Field-name fragments whose values never reach a log line. Roster secrets are
# short, so the value is replaced outright rather than partially shown.
_SECRET_MARKERS = ("password", "secret", "token", "api_key", "apikey", "authorization")
_MASK = "***"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


@contextlib.contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a fresh correlation id for the duration of one unit of work.

    The previous id (usually none) is restored on exit, so consecutive login
    attempts in the same task never share an id.
    """
    token = correlation_id_var.set(correlation_id or uuid.uuid4().hex)
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


def _is_secret_key(key: str) -> bool:
    lowered = key.lower().replace("-", "_")
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _mask_value(key: str, value: Any) -> Any:
    if _is_secret_key(key):
        return _MASK if value is not None else None
    if isinstance(value, Mapping):
        return {k: _mask_value(str(k), v) for k, v in value.items()}
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor masking secret-named fields, including inside nested detail dicts."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _mask_value(key, event_dict[key])
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    Args:
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line when True
        development_mode: Colored console rendering, overrides ``json_output``
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_from_env() -> None:
    configure_logging(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
        development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
    )


configure_from_env()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Provider error bodies can echo request URLs (API keys) or credentials
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r'(?i)([?&]key=)[^\s&"]+'),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s,]+"),
    re.compile(r"(?i)bearer\s+[a-z0-9._\-]+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip credentials, API keys and local paths from provider error text.

    Applied before provider text is logged or attached to an error detail.
    Messages are capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
