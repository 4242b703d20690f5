"""Logging configuration for the relay using structlog on top of stdlib logging."""

import logging
from typing import Any

import structlog
from structlog.typing import Processor

_configured = False


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog and route stdlib loggers (uvicorn, websockets, google) through it.

    :param level: Root log level name.
    :param json_output: Render one JSON object per line instead of the console format.
    """
    global _configured

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    if _configured:
        root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Chatty libraries only surface warnings
    for name in ("websockets", "httpx", "google", "grpc"):
        liblog = logging.getLogger(name)
        liblog.handlers.clear()
        liblog.setLevel(logging.WARNING)
        liblog.propagate = True

    _configured = True


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name, **initial_values)
