from __future__ import annotations

import logging

from homework_api.config import get_log_level


def get_logger(name: str, level: int | str | None = None) -> logging.Logger:
    """Return the named logger, attaching one stream handler on first use.

    The level defaults to ``LOG_LEVEL``; unknown level names fall back to INFO.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(fmt="%(asctime)s %(levelname)s %(name)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    resolved = level if level is not None else get_log_level()
    if isinstance(resolved, str) and resolved not in logging.getLevelNamesMapping():
        resolved = logging.INFO
    logger.setLevel(resolved)
    return logger


__all__ = ["get_logger"]
