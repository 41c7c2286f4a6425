from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

REDACTED = "[redacted]"

# values under these keys are never rendered, not even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie", "hash")
_EMAIL_KEYS = ("email", "to")


def bind_request(request_id: Optional[str] = None, **fields: Any) -> str:
    """Start a fresh logging context for one HTTP request.

    Anything bound by a previous request on the same task is dropped. Returns
    the request id, generated when the caller did not supply one.
    """
    rid = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid, **fields)
    return rid


def bind_principal(user_id: str, session_id: Optional[str] = None) -> None:
    """Attach the authenticated caller to every later entry of this request."""
    structlog.contextvars.bind_contextvars(user_id=user_id, session_id=session_id)


def get_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


def mask_email(value: str) -> str:
    if "@" not in value:
        return REDACTED
    local, domain = value.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and addresses before an entry is rendered.

    Token, password and hash material is replaced outright; email addresses
    keep their first two characters and the domain so support can still
    correlate a report with a log line.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = REDACTED
        elif lower_key in _EMAIL_KEYS or lower_key.endswith("_email"):
            if isinstance(value, str):
                event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
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
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


# read straight from the environment: config.py logs through this module
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name).bind(component=name.rsplit(".", 1)[-1])
