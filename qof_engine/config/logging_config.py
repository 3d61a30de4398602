"""
Structured logging for evaluation passes.

structlog events and plain stdlib records share one handler on the root
logger, and a single ProcessorFormatter renders both: JSON lines when
LOG_FORMAT=json, coloured console output otherwise. Pass context bound with
bind_pass_context (pass_id, as_of) is merged into every entry.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from qof_engine.config.config import Settings, get_settings


def _pre_chain() -> list[Processor]:
    """Enrichment applied to every entry before rendering."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str) -> list[Processor]:
    if log_format == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(settings: Settings | None = None) -> None:
    """
    Route structlog through stdlib logging with one rendering step.

    Args:
        settings: Settings to read level and format from. If None, uses cached settings.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=_pre_chain() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta]
        + _renderer(settings.log_format),
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level.upper())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module (pass __name__)."""
    return structlog.get_logger(name)


def bind_pass_context(pass_id: str, as_of: str, **extra: Any) -> None:
    """
    Bind evaluation pass context to every entry logged in this context.

    Worker threads only see it when they run inside a copy of this
    context (see QualityEngine._evaluate_grid).
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(pass_id=pass_id, as_of=as_of, **extra)


def clear_pass_context() -> None:
    """Drop any pass context bound by bind_pass_context."""
    structlog.contextvars.clear_contextvars()
