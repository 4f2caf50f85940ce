from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Context variable for correlation ID (one per inbound request)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Keys whose values are credentials or personal data. Matching is by substring
# so ``new_pin`` and ``owner_email`` are covered too.
_PII_KEYS = ("pin", "otp", "password", "secret", "token", "key", "email", "phone")
# Counters and timestamps that merely mention a sensitive word.
_PII_SAFE_KEYS = frozenset({
    "pin_reset_count",
    "last_pin_reset_at",
    "last_pin_reset_by",
    "pin_changed_at",
    "token_type",
})


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and PII from log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _PII_SAFE_KEYS:
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                # Redact but preserve first/last 2 chars for debugging
                event_dict[key] = value[:2] + "***" + value[-2:]
            elif isinstance(value, str):
                event_dict[key] = "***"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Console rendering wins over JSON when either the dev
    flag is on or JSON is switched off.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", "false")

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments of queries, filesystem paths, inline credentials and tracebacks
# that must not reach a client.
_LEAKY_FRAGMENTS = [
    re.compile(pattern)
    for pattern in (
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        r"(?i)(password|secret|token|key|pin|otp|credential)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]
_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make an exception message safe to echo in a debug error envelope."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error
