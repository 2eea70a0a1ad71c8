from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Ties together the log lines of one login or reset flow
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def ensure_correlation_id() -> str:
    """Return the caller's correlation ID, starting a new one if none is bound.

    A hosting controller that already set an ID keeps it; flows entered
    without one (scripts, background cleanup) get their own.
    """
    return get_correlation_id() or set_correlation_id()


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Credentials are masked entirely
_CREDENTIAL_KEYS = {"password", "secret", "token", "code", "otp", "authorization"}
# Addresses keep a prefix and their domain for debugging
_ADDRESS_KEYS = {"email", "to"}
# Keys that look sensitive but only ever carry digests or identifiers
_SAFE_KEYS = {"email_hash", "token_type", "error_code", "jti", "message_kind"}
REDACTED = "[redacted]"


def _mask_address(value: str) -> str:
    if "@" not in value:
        return REDACTED
    local, domain = value.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credentials and addresses in log entries."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(word in lower_key for word in _CREDENTIAL_KEYS):
            event_dict[key] = REDACTED
        elif lower_key in _ADDRESS_KEYS or "email" in lower_key:
            event_dict[key] = _mask_address(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def email_hash(email: str) -> str:
    """Stable digest of an address for log correlation without exposing it."""
    # surrogatepass: a malformed address from a request body must still hash
    return hashlib.sha256(email.encode("utf-8", "surrogatepass")).hexdigest()
