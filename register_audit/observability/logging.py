"""
Structured logging configuration using structlog.

JSON lines in production, console renderer when DEBUG. Shareholder registers
carry resident registration numbers, so every event passes through
mask_resident_ids before it is rendered: the back seven digits of anything
shaped like a 13-digit resident or corporate number are replaced.
"""

import logging
import re
import sys
from typing import Any, Optional

import structlog

from register_audit.config import settings

RESIDENT_ID_PATTERN = re.compile(r"(?<!\d)(\d{6})[-\s]?(\d)\d{6}(?!\d)")

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "PIL", "multipart")


def _mask(value: Any) -> Any:
    if isinstance(value, str):
        return RESIDENT_ID_PATTERN.sub(r"\1-\2******", value)
    if isinstance(value, dict):
        return {k: _mask(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_mask(v) for v in value)
    return value


def mask_resident_ids(logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor: 800101-1234567 -> 800101-1******."""
    return {key: _mask(value) for key, value in event_dict.items()}


def setup_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog and route stdlib logging through the same renderer."""
    level = level or settings.LOG_LEVEL
    if json_logs is None:
        json_logs = not settings.DEBUG

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        mask_resident_ids,
    ]

    if json_logs:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

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

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
