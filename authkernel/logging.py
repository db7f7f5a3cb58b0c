from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog

# keys whose string values never reach a log line in clear
_SECRET_KEYS = ("password", "secret", "token", "authorization", "bearer")


def redact_value(value: str) -> str:
    """Keep the first/last 2 chars of a sensitive string, mask the rest."""
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def redact_email(email: str) -> str:
    """Mask the local part of an address; the domain stays readable."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


@contextmanager
def account_context(account_id: Optional[str]) -> Iterator[None]:
    """Attach ``account_id`` to every event logged inside the block."""
    if account_id is None:
        yield
        return
    with structlog.contextvars.bound_contextvars(account_id=str(account_id)):
        yield


def _redact_account_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if "email" in lower_key:
            event_dict[key] = redact_email(value)
        elif any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = redact_value(value)
    return event_dict


def _configure_structlog(log_level: str = "INFO", json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_account_fields,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
