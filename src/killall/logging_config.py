"""Structured logging setup."""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from typing import Literal

import structlog
from structlog.types import Processor

_SENSITIVE_MARKERS = ("password", "secret", "key", "token", "auth", "credential")


def setup_logging(
    log_format: Literal["json", "console"] = "console",
    log_level: str = "INFO",
) -> None:
    """Configure structlog on top of the standard library logger.

    Args:
        log_format: "json" for machine readable output, "console" for humans.
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR).
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
        force=True,
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=False))
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=False,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).info("logging_initialized", log_format=log_format, log_level=log_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def mask_environment(environment: Mapping[str, str]) -> dict[str, str]:
    """Replace values of secret-looking variables before they reach a log line."""
    masked: dict[str, str] = {}
    for key, value in environment.items():
        lowered = key.lower()
        masked[key] = "***" if any(marker in lowered for marker in _SENSITIVE_MARKERS) else value
    return masked
