"""JSON logging for the escrow service."""
from __future__ import annotations

import logging
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

_NOISY_LOGGERS = ("apscheduler.scheduler", "apscheduler.executors.default")


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging with a JSON formatter.

    Fields passed through ``extra=`` (``trade_id``, ``direction``...) become
    top-level keys of each JSON record.
    """

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


__all__ = ["setup_logging", "get_logger"]
