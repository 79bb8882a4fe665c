"""structlog rendering for the notifier's own log lines, plus request log context."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

from checkend.notice import NOTIFIER_NAME

if TYPE_CHECKING:
    from checkend.config import Configuration

HANDLER_NAME = "checkend.structlog"


def _notifier_fields(environment: str):
    def add_notifier_fields(logger, method_name, event_dict):
        event_dict.setdefault("notifier", NOTIFIER_NAME)
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_notifier_fields


def configure_logging(config: Configuration) -> logging.Handler | None:
    """Render ``config.logger`` through structlog when ``log_format`` is set.

    ``"json"`` emits one JSON object per line and ``"console"`` a plain
    key=value line. Both carry the notifier name, environment and any
    request context bound with :func:`bind_request_context`. With no
    ``log_format`` the host's own logging setup is left untouched.

    Calling again replaces the handler installed by the previous call.
    """
    if config.log_format is None:
        return None

    if config.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _notifier_fields(config.environment),
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(formatter)

    logger = config.logger
    for existing in list(logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if config.debug else logging.INFO)
    logger.propagate = False
    return handler


def bind_request_context(request_id: str | None = None, **extra) -> None:
    """Bind request identifiers to the current async context for log lines."""
    ctx = {k: v for k, v in extra.items() if v is not None}
    if request_id:
        ctx["request_id"] = request_id
    if ctx:
        structlog.contextvars.bind_contextvars(**ctx)


def clear_request_context() -> None:
    """Clear bound context variables after a request."""
    structlog.contextvars.clear_contextvars()
