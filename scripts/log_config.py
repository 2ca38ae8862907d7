#!/usr/bin/env python3
"""
Unified logging configuration

The global log level is controlled by environment variables:
- LNCLEAR_LOG_LEVEL / LOG_LEVEL: Python log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: "1" / "true" switches to DEBUG when no level is set

Usage:
    from log_config import setup_logging, get_logger

    # call once at the entry point
    setup_logging()

    logger = get_logger(__name__)
    logger.info("Hello")
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Optional on-disk log, used only when its directory is writable
DEFAULT_LOG_FILE = os.environ.get("LNCLEAR_LOG_FILE", "/var/log/lnclear/lnclear-ctl.log")

_logging_configured = False


def get_log_level() -> int:
    """Resolve the log level from the environment

    Checked in order:
    1. LNCLEAR_LOG_LEVEL, then LOG_LEVEL
    2. DEBUG - "1", "true", "yes" or "on" selects DEBUG

    Returns:
        logging level constant
    """
    level_str = (
        os.environ.get("LNCLEAR_LOG_LEVEL") or os.environ.get("LOG_LEVEL", "")
    ).upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        if debug_flag in ("1", "true", "yes", "on"):
            level_str = "DEBUG"
        else:
            level_str = DEFAULT_LOG_LEVEL

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
        "FATAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def _file_handler(log_file: str, log_format: str) -> Optional[logging.Handler]:
    path = Path(log_file)
    if not path.parent.is_dir() or not os.access(path.parent, os.W_OK):
        return None
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter(log_format, DATE_FORMAT))
    return handler


def setup_logging(
    name: Optional[str] = None,
    level: Optional[int] = None,
    detailed: bool = False,
    force: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure global logging

    Args:
        name: Logger name, None for the root logger
        level: Log level, None to read it from the environment
        detailed: Include file name and line number in each record
        force: Reconfigure even if logging was already set up
        log_file: Also append to this file when its directory is writable

    Returns:
        The configured Logger
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger(name)

    if level is None:
        level = get_log_level()

    log_format = LOG_FORMAT_DETAILED if detailed else LOG_FORMAT

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=force or not _logging_configured
    )

    if log_file:
        handler = _file_handler(log_file, log_format)
        if handler is not None:
            logging.getLogger().addHandler(handler)

    # Keep third-party HTTP noise down
    for lib_logger in ["urllib3", "requests"]:
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    _logging_configured = True

    logger = logging.getLogger(name)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a named logger, configuring logging first if needed

    Args:
        name: Logger name, usually __name__

    Returns:
        Logger instance
    """
    if not _logging_configured:
        setup_logging()

    return logging.getLogger(name)
