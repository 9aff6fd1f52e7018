"""Logger factory.

Logs go to stderr: stdout belongs to the MCP stdio transport.
"""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a module logger with a single stderr handler on the package root."""
    root = logging.getLogger("memevolve")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(handler)
        root.setLevel(os.environ.get("MEMEVOLVE_LOG_LEVEL", "INFO").upper())

    logger = logging.getLogger(name)
    if level:
        logger.setLevel(level.upper())
    return logger


def set_level(level: str) -> None:
    """Apply a configured log level to every memevolve logger."""
    logging.getLogger("memevolve").setLevel(level.upper())
