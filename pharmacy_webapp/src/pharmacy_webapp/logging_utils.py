"""Logging helpers for the pharmacy web client."""

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level_name: Optional[str] = None) -> None:
    """Configure console logging once for the whole process.

    The level defaults to ``settings.LOG_LEVEL``. Calling this again after
    handlers are installed is a no-op.
    """
    if logging.getLogger().handlers:
        return
    if level_name is None:
        from .config import settings

        level_name = settings.LOG_LEVEL
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


__all__ = ["configure_logging", "LOG_FORMAT"]
