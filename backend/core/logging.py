"""
Structured logging setup shared by the worker and Celery entry points.
"""
import logging
import sys

import structlog


def configure_logging(json_logs: bool = True, level: int = logging.INFO) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_logs: Render JSON lines (production) instead of console output.
        level: Minimum log level.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
