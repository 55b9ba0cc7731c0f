"""
Structured Logging with Structlog.

Every log line is a snake_case event name plus keyword context. JSON output
for production, colored console output for local runs.
"""

import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from credit_engine.config import settings

# Keys whose values never reach a log sink
REDACTED_KEYS = frozenset({"api_key", "authorization", "token", "identity_service_token"})
REDACTED = "[redacted]"

# Libraries that log every query or request at INFO
NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx")


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service name, version and storage backend on every entry."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    event_dict.setdefault("storage_backend", settings.storage_backend)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credentials passed as log context."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def _processors() -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging() -> None:
    """
    Configure structlog over the standard library logger.

    A JSON entry looks like:
    {
        "event": "reconciliation_shortfall",
        "level": "warning",
        "timestamp": "2026-03-01T12:00:00.123456Z",
        "logger": "credit_engine.services.router",
        "service": "credit-engine",
        "version": "0.1.0",
        "storage_backend": "postgres",
        "usage_id": "req-123",
        "account_id": "acct-9",
        "shortfall": 4
    }
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind request-scoped context (usage_id, account_id, ...) to every log line
    emitted inside the block.

    Nested blocks may rebind a key; the outer value is restored on exit.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._tokens: Mapping[str, Token[Any]] = {}

    def __enter__(self) -> None:
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
