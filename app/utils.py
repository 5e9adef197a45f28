"""
Shared helpers.
"""
import logging
import sys

from app.core import config

_configured = False


def get_logger(name: str) -> logging.Logger:
    """
    Return a module logger.

    The root "app" handler is installed once; every logger obtained here
    propagates to it.
    """
    global _configured
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        root = logging.getLogger("app")
        root.addHandler(handler)
        root.setLevel(config.LOG_LEVEL)
        _configured = True
    if not name.startswith("app"):
        name = f"app.{name}"
    return logging.getLogger(name)
