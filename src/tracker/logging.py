"""structlog setup for the tracker, routed through the stdlib logging tree.

ccxt, aiosqlite and uvicorn log through stdlib logging; they share the
structlog renderer so a scheduler tick and the HTTP server write one
consistent stream.
"""

import logging
from contextlib import AbstractContextManager
from typing import Any

import structlog

# Third-party loggers that are noisy at INFO/DEBUG, and the level they get
_LIBRARY_LEVELS = {
    "ccxt": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Configure structlog and the root handler.

    Args:
        log_level: Root level name, e.g. "DEBUG".
        log_format: "json" for machine-readable lines, anything else for the
            console renderer.
    """
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name, level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(level)


def log_context(**values: Any) -> AbstractContextManager[Any]:
    """Bind ``values`` to every log line emitted inside the block, across awaits."""
    return structlog.contextvars.bound_contextvars(**values)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
