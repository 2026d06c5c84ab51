"""
softupdate Logging Configuration

Update runs log through structlog. Console output is colored for
interactive use or JSON for log shippers; a JSON log file can be attached so
every check and upgrade leaves a record next to the installation.
"""
import logging
import os
import sys
from typing import Optional

import structlog
from pythonjsonlogger import jsonlogger

from softupdate.config import Settings

# Loggers of libraries used for transport and persistence
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def setup_logging(log_level: str = "INFO", json_logs: bool = False, log_file: Optional[str] = None) -> None:
    """
    Configure updater logging

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, emit JSON on stdout instead of colored console output
        log_file: Optional path of a JSON log file for update runs
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    if not root.handlers:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(console)
    root.setLevel(numeric_level)

    if log_file and not any(
        isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_file) for h in root.handlers
    ):
        root.addHandler(get_file_handler(log_file, log_level))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.processors.ExceptionRenderer(), structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(settings: Settings) -> None:
    """Configure logging from updater settings"""
    setup_logging(settings.log_level, settings.json_logs, settings.log_file)


def get_file_handler(log_file: str, log_level: str = "INFO") -> logging.FileHandler:
    """Create a JSON file handler for update run logs"""
    handler = logging.FileHandler(log_file)
    handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    return handler
