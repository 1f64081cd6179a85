from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_REDACTED_KEYS = frozenset(
    {"password", "secret", "token", "api_key", "authorization", "cookie", "email"}
)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _correlation_processor(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redaction_processor(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask session ids, keys and similar credentials before rendering."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _REDACTED_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines are the default; ``dev_mode`` (or ``json_output=False``) switches
    to the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _correlation_processor,
        _redaction_processor,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
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


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Backend detail that must not reach a caller through an error body
_CLIENT_MESSAGE_SCRUBBERS = [
    re.compile(r"(?i)\b(?:postgres(?:ql)?|redis|rediss)://\S+"),
    re.compile(r"(?i)\bsk-or-[\w-]+"),
    re.compile(r"(?i)\bbearer\s+\S+"),
    re.compile(r"(?i)\b(?:select|insert\s+into|update|delete\s+from)\s+.{0,60}"),
    re.compile(r"(?i)(?:password|secret|token|api.?key)\s*[:=]\s*\S+"),
    re.compile(r"(?:/(?:home|var|etc|usr|opt|tmp|srv)/|[A-Za-z]:\\)\S+"),
    re.compile(r"(?i)traceback \(most recent call last\).*", re.DOTALL),
]

MAX_CLIENT_MESSAGE_LENGTH = 300


def scrub_error_message(message: Any, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, keys, SQL, paths and tracebacks from ``message``."""
    if not isinstance(message, str) or not message.strip():
        return "An error occurred"
    for pattern in _CLIENT_MESSAGE_SCRUBBERS:
        message = pattern.sub(replacement, message)
    if len(message) > MAX_CLIENT_MESSAGE_LENGTH:
        message = message[: MAX_CLIENT_MESSAGE_LENGTH - 3] + "..."
    return message
