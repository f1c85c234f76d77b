"""Logging configuration.

All modules log through ``structlog.get_logger(__name__)`` with snake_case event
names and keyword context. ``configure_logging`` wires structlog on top of the
standard library so third-party loggers (imapclient) share the same output.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog and stdlib logging for the process.

    Args:
        level: Minimum level name ("DEBUG", "INFO", ...)
        json_output: Render JSON lines instead of key=value console output
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
        force=True,
    )
    # imapclient logs every command at DEBUG, including the LOGIN line
    logging.getLogger("imapclient").setLevel(max(log_level, logging.INFO))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
