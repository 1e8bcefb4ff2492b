"""Structured logging configuration with structlog.

Every module logs through the stdlib ``logging`` API; structlog renders the
records as JSON (production) or colored console lines (dev). Records emitted
while a controller handles a signal, poll tick or watchdog expiry carry the
job type as ``operation_type``.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Chatty below WARNING: HTTP client per-request lines, loop debug, Redis connects
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "arq", "redis")


@contextmanager
def operation_context(job_type: str, **fields) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``job_type``.

    Nested blocks override and then restore the outer values.
    """
    with structlog.contextvars.bound_contextvars(operation_type=job_type, **fields):
        yield


def current_operation_type() -> str | None:
    return structlog.contextvars.get_contextvars().get("operation_type")


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging with structlog.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "json" for production, "console" for colored dev output
    """
    # Applied to stdlib records too, so contextvars reach logging.getLogger() callers
    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
