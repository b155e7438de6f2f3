from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

_SECRET_MARKERS = ("password", "secret", "token", "authorization", "api_key")
_CODE_KEYS = {"code", "mfa_code", "verification_code", "backup_code", "challenge_code"}


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request and return its ID."""
    rid = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid)
    return rid


def current_request_id() -> str:
    """The ID bound for the current request, or a new one outside a request."""
    rid = structlog.contextvars.get_contextvars().get("request_id")
    return rid or str(uuid.uuid4())


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credentials and one-time codes."""
    for key, value in event_dict.items():
        lower_key = key.lower()
        if lower_key.endswith("_id") or lower_key == "event" or not isinstance(value, str):
            continue
        if lower_key in _CODE_KEYS or any(marker in lower_key for marker in _SECRET_MARKERS):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def _configure_structlog(log_level: str, json_output: bool) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secrets,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    os.getenv("LOG_LEVEL", "INFO"),
    os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def mask_email(email: Optional[str]) -> str:
    """Mask an e-mail address for logs and status payloads.

    ``alice@example.com`` becomes ``a***@example.com``.
    """
    if not email or "@" not in email:
        return email or ""
    local, domain = email.split("@", 1)
    masked_local = local if len(local) <= 1 else local[0] + "***"
    return f"{masked_local}@{domain}"


def mask_phone(phone_number: Optional[str]) -> str:
    """Keep only the last four digits of a phone number."""
    if not phone_number or len(phone_number) < 4:
        return phone_number or ""
    if len(phone_number) > 10:
        return "***-***-" + phone_number[-4:]
    return "***-" + phone_number[-4:]
