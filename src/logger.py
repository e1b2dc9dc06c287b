"""Structured logging configuration using structlog.

JSON output in production, console-friendly output in development. Both the
policy reconciler and the approval bot configure logging through here and tag
every event with the service name.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from src.config import settings

SENSITIVE_KEYS = {
    "token",
    "password",
    "api_key",
    "apikey",
    "secret",
    "authorization",
    "x-emby-token",
    "x-api-key",
    "cookie",
}

# Payment slips arrive as base64 data URIs; never dump them into logs
MAX_LOGGED_VALUE_LENGTH = 512


def add_log_level(_logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add log level to the event dict."""
    event_dict["level"] = "warning" if method_name == "warn" else method_name
    return event_dict


def censor_sensitive_data(
    _logger: logging.Logger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask credentials and truncate oversized values such as data URIs."""

    def _censor_value(key: str, value: Any) -> Any:
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            return "***"
        if isinstance(value, dict):
            return {k: _censor_value(str(k), v) for k, v in value.items()}
        if isinstance(value, str) and value.startswith("data:"):
            return value[:32] + "..."
        if isinstance(value, str) and len(value) > MAX_LOGGED_VALUE_LENGTH:
            return value[:MAX_LOGGED_VALUE_LENGTH] + "..."
        return value

    return {key: _censor_value(key, value) for key, value in event_dict.items()}


def configure_logging() -> None:
    """Configure structlog on top of stdlib logging."""
    level = getattr(logging, settings.log_level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        censor_sensitive_data,
    ]

    if settings.is_production:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # httpx logs every request at INFO, which drowns the 10 s policy sync
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def bind_service(name: str) -> None:
    """Tag all subsequent log events of this process with the service name."""
    structlog.contextvars.bind_contextvars(service=name)


# Configure logging on module import
configure_logging()
