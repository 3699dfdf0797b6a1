"""Structured logging for the autopilot engine (structlog over stdlib logging).

Each scheduled job binds its name into structlog contextvars, so every event
logged during a cycle carries ``job=<name>`` without threading it through
call signatures.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("ccxt", "ccxt.base.exchange", "aiosqlite", "uvicorn.access")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False) if log_format == "plain" else structlog.dev.ConsoleRenderer()


def _install_handler(renderer: structlog.types.Processor, level: int) -> None:
    """Route stdlib records (ours and third-party) through one structlog formatter."""
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_PRE_CHAIN,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog and the root handler.

    LOG_FORMAT selects the renderer: "console" (default), "plain" (console
    without colours, for journald) or "json".
    """
    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _install_handler(
        _renderer(os.environ.get("LOG_FORMAT", "console").lower()),
        getattr(logging, log_level.upper(), logging.INFO),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bound_job(job: str) -> Iterator[None]:
    """Bind the running job name to every log event inside the block."""
    with structlog.contextvars.bound_contextvars(job=job):
        yield
