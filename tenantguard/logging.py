from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Substrings that mark a field as a credential
_CREDENTIAL_MARKERS = ("password", "secret", "token", "authorization", "cookie")
# Token metadata that is safe to log as-is
_SAFE_TOKEN_FIELDS = frozenset(
    {"token_id", "token_type", "new_token_id", "old_token_id", "token_kind"}
)
_REDACTED = "[redacted]"


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh UUID) to the current task context."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def _attach_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = request_id_var.get()
    if rid and "request_id" not in event_dict:
        event_dict["request_id"] = rid
    return event_dict


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values and shorten email addresses.

    Emails keep their domain so tenant-level patterns stay visible in logs.
    """
    for key, value in list(event_dict.items()):
        name = key.lower()
        if name in _SAFE_TOKEN_FIELDS or value is None:
            continue
        if "email" in name and isinstance(value, str):
            event_dict[key] = _mask_email(value)
        elif any(marker in name for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = _REDACTED
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline used by every module.

    JSON lines go to stdout in deployed environments; ``json_output=False``
    switches to the colored console renderer for local work.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _attach_request_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
