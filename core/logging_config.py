"""Structured logging for the engine, scheduler and stores.

Everything logs through ``structlog.get_logger(__name__)``; ``setup_logging``
routes those events and plain stdlib records through one handler. Output is
a colored console renderer in development (or with ``LOG_FORMAT=text``) and
JSON lines otherwise.

While a run is being walked, ``execution_logging`` binds its execution id
and flow name so every event emitted by nodes and stores carries them.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from app.config import Settings, get_settings

QUIET_LOGGERS = ("aiosqlite", "httpx", "httpcore")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the root logger from ``settings``."""
    settings = settings or get_settings()
    shared = _shared_processors()

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.SQLALCHEMY_ECHO else logging.WARNING)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def execution_logging(execution_id: str, flow_name: str) -> Iterator[None]:
    """Bind ``execution_id`` and ``flow_name`` to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(execution_id=execution_id, flow_name=flow_name):
        yield
