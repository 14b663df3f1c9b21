"""Structured logging for the payments service.

structlog renders JSON in production and a console view in debug. Stdlib
loggers (uvicorn, SQLAlchemy, stripe) go through the same processor chain.

Every entry carries the request correlation id, and entries logged while a
provider event is being reconciled also carry ``event_id``/``event_type``
(see ``bind_provider_event``). Provider secrets never reach the output.
"""

import logging
import logging.config
import re
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from asgi_correlation_id.context import correlation_id

# Keys whose values are never logged
SECRET_KEYS = frozenset({"client_secret", "api_key", "stripe_secret_key", "stripe_webhook_secret", "authorization"})

# Stripe secret keys, webhook secrets and intent client secrets embedded in strings
_SECRET_PATTERN = re.compile(r"\b(sk_(?:live|test)_\w+|rk_(?:live|test)_\w+|whsec_\w+|pi_\w+_secret_\w+)")

REDACTED = "[redacted]"


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_provider_secrets(logger, method, event_dict):
    """Mask secret-bearing keys and any Stripe secret embedded in a string value."""
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str):
            event_dict[key] = _SECRET_PATTERN.sub(REDACTED, value)
    return event_dict


@contextmanager
def bind_provider_event(event_id: str, event_type: str) -> Iterator[None]:
    """Attach the provider event being reconciled to every log entry in scope."""
    with structlog.contextvars.bound_contextvars(event_id=event_id, event_type=event_type):
        yield


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_provider_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and route stdlib logging through it.

    Call before importing modules that log at import time: structlog caches
    the processor chain on first use.
    """
    shared_processors = _shared_processors()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            # The SDK logs request bodies at INFO
            "stripe": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "marketpay": {"level": log_level},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
