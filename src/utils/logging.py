# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Structured logging for the notification core.

Modules log through ``logging.getLogger(__name__)``. The audit trail
writes through structlog on the ``audit`` logger, and the send path
binds request context (sender, student, category) so that every audit
line emitted while handling a request carries it.

Example:
    >>> setup_logging(get_settings())
    >>> with log_context(sender_id="teacher-1", category="attendance"):
    ...     get_audit_logger().info("message.queued", message_id="msg_1")
"""

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from src.core.config.settings import Settings

AUDIT_LOGGER_NAME = "audit"

# Provider SDKs, the ORM and the scheduler are chatty below WARNING
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosmtplib", "sqlalchemy", "apscheduler", "asyncio")


def _processors(console: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    return processors


def setup_logging(settings: "Settings") -> None:
    """Configure structlog and the stdlib root logger.

    Console rendering is used in development or debug mode, JSON lines
    everywhere else.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=_processors(console=settings.is_development or settings.debug),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stdout, level=level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("src").setLevel(level)


def get_audit_logger() -> structlog.stdlib.BoundLogger:
    """Logger used for audit entries; audit lines are ordinary structured logs."""
    return structlog.get_logger(AUDIT_LOGGER_NAME)


@contextmanager
def log_context(**values: object) -> Iterator[None]:
    """Bind values to structlog output for the duration of the block.

    Values bound by an enclosing block are restored on exit, so nested
    contexts (a bulk send wrapping single sends) behave as expected.
    """
    with structlog.contextvars.bound_contextvars(**values):
        yield
