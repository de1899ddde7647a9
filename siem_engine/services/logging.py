"""
Structured logging setup for the engine service.

Example:
    >>> setup_logging("DEBUG", LogFormat.TEXT)
    >>> structlog.get_logger(__name__).info("service_ready")
"""

import logging
from typing import Any, List, Union

import structlog

from siem_engine.config.models import LogFormat, LogLevel


def setup_logging(
    level: Union[LogLevel, str] = LogLevel.INFO,
    fmt: Union[LogFormat, str] = LogFormat.JSON,
) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        level: Minimum log level name (e.g., "INFO").
        fmt: json for machine-readable lines, text for the console renderer.
    """
    level_name = LogLevel(level).value if isinstance(level, LogLevel) else str(level).upper()
    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if LogFormat(fmt) == LogFormat.TEXT
        else structlog.processors.JSONRenderer()
    )

    processors: List[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level_name, logging.INFO),
    )

    # Connection chatter from the redis client
    logging.getLogger("redis").setLevel(logging.WARNING)
