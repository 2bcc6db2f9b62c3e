"""Logging configuration for the portal worker."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler")


def configure_logging(level: str = "INFO", *, quiet_dependencies: bool = True) -> None:
    """Install a single stdout handler on the root logger."""

    resolved = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    if quiet_dependencies:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(resolved, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
