"""
Structured logging configuration.

Production emits JSON lines to stdout; every other environment gets the
colored console renderer. Values under sensitive keys are masked before
rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from billsync import __version__
from billsync.config import get_settings

SENSITIVE_KEYS = ("secret", "api_key", "authorization", "signature", "token")

# Chatty client libraries; Stripe logs every request at INFO
QUIET_LOGGERS = ("stripe", "httpx", "httpcore")


def _mask(value: Any) -> str:
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***"


def mask_sensitive(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask operator keys, webhook secrets and signature headers."""
    for key in list(event_dict):
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", "billsync")
    event_dict.setdefault("version", __version__)
    return event_dict


def configure_logging() -> None:
    """Configure structlog and the standard library root logger."""
    settings = get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_service,
        mask_sensitive,
    ]
    if settings.is_production:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.value),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
