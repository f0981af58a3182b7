"""
Structured logging for the signing core.

Core modules log through stdlib loggers; this routes them through structlog
so every line carries the same timestamp, level and logger fields. Signing
material never reaches the output: keys that name secrets are masked.
"""

import logging
import sys
from typing import Any, Mapping, MutableMapping, Optional, TextIO

import structlog

from .config import Settings, settings as default_settings


REDACTED = "[redacted]"

_SECRET_KEYS = frozenset({
    "seed",
    "private_key",
    "secret",
    "signature",
    "signatures",
    "token",
    "session_token",
    "authorization",
})


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any]:
    """structlog processor masking values whose key names signing material."""
    for key in list(event_dict):
        if key.lower() in _SECRET_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(
    log_level: Optional[str] = None,
    settings: Optional[Settings] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure structlog and the root logger.

    Args:
        log_level: Override log level (default: settings.log_level)
        settings: Settings to read level and format from
        stream: Output stream (default: stdout)
    """
    settings = settings or default_settings
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)

    fmt = settings.log_format.lower()
    console = fmt == "console" or (fmt == "auto" and level == logging.DEBUG)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if console:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # HTTP client chatter drowns out signing events
    for name in ("httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)
