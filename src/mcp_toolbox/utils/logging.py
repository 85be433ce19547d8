"""Logging utilities for MCP Toolbox."""

import logging
import os
import sys
from typing import TextIO

LOGGER_NAME = "mcp-toolbox"
LOG_LEVEL_ENV = "MCP_TOOLBOX_LOG_LEVEL"


def get_log_level_from_env(default: int = logging.WARNING) -> int:
    """Read the log level name from the environment.

    Unknown names fall back to ``default``.
    """
    name = os.getenv(LOG_LEVEL_ENV, "").strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def setup_logging(
    level: int = logging.WARNING, stream: TextIO = sys.stderr
) -> logging.Logger:
    """Configure the ``mcp-toolbox`` logger tree.

    Logs go to stderr by default, since stdout carries the MCP stdio
    protocol. Other loggers are left untouched.

    Args:
        level: Logging level for the toolbox loggers
        stream: Output stream for log records

    Returns:
        The configured toolbox root logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Mask a secret, keeping a few characters at each end.

    Args:
        value: The value to mask
        keep_chars: Characters kept visible at the start and end

    Returns:
        The masked value, or ``"Not Provided"`` for empty input.
    """
    if not value:
        return "Not Provided"
    if len(value) <= keep_chars * 2:
        return "*" * len(value)
    return value[:keep_chars] + "*" * (len(value) - keep_chars * 2) + value[-keep_chars:]


def mask_mapping(values: dict[str, str] | None) -> dict[str, str]:
    """Mask every value of a header or environment mapping."""
    return {key: mask_sensitive(value) for key, value in (values or {}).items()}
