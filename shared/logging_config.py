"""
structlog setup driven by LoggingConfig.
"""

import logging
import sys

import structlog

from shared.config import Settings, get_settings


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        settings: Settings instance. If None, loads from environment.
    """
    settings = settings or get_settings()
    config = settings.logging
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
    ]
    if config.include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    processors.append(structlog.processors.format_exc_info)

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
