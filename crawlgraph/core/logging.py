"""
structlog setup shared by the API and the Celery workers.

JSON lines when LOG_FORMAT=json, coloured console otherwise. Records from
stdlib loggers (celery, httpx, sqlalchemy) go through the same processor chain
so one stream carries both.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from crawlgraph.core.config import get_settings

# Libraries that log every request or statement at INFO
CHATTY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "openai": logging.WARNING,
    "playwright": logging.WARNING,
    "asyncio": logging.WARNING,
}


def add_severity(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    """Upper-case level under `severity`, the key log collectors index on."""
    event_dict["severity"] = "WARNING" if method == "warn" else method.upper()
    return event_dict


def _render_chain(log_format: str) -> list[Processor]:
    if log_format == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    # ConsoleRenderer formats exc_info itself
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(component: str | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    `component` ("api", "worker") is bound into the context of every event
    so mixed streams can be split downstream.
    """
    settings = get_settings()
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_severity,
    ]

    structlog.configure(
        processors=shared + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_render_chain(settings.LOG_FORMAT),
        ],
    ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    if settings.ENV == "production":
        for name, quiet_level in CHATTY_LOGGERS.items():
            logging.getLogger(name).setLevel(quiet_level)

    if component:
        structlog.contextvars.bind_contextvars(component=component)
