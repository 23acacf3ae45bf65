"""
Logging setup.

Modules log through ``structlog.get_logger()``; entry points call
``configure_logging`` once to choose the level and renderer.
"""

import logging
import sys

import structlog

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _stderr_logger(*args) -> structlog.PrintLogger:
    # Resolve sys.stderr per logger so redirected streams are honoured
    return structlog.PrintLogger(sys.stderr)


def configure_logging(level: str = "info") -> None:
    """Render key/value log lines with ISO timestamps to stderr.

    Raises:
        ValueError: If level is not one of debug, info, warning, error
    """
    if level.lower() not in LEVELS:
        raise ValueError(f"log level must be one of: {sorted(LEVELS)}")

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(LEVELS[level.lower()]),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )
