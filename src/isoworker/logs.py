"""Logging configuration for the supervisor and the worker process.

The worker process must never log to its own standard streams: those are
captured and relayed to the orchestrator as test output. Worker logging
therefore goes to the configured log file only, or nowhere.
"""

from __future__ import annotations

import logging
from pathlib import Path

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(process)d] %(message)s"


def configure_logging(
    log_level: str = "INFO",
    log_file: str | None = None,
    *,
    console: bool = True,
) -> logging.Logger:
    """Configure the ``"isoworker"`` logger.

    Idempotent: repeated calls do not duplicate handlers.

    Args:
        log_level: Level name such as ``"INFO"`` or ``"debug"``.
        log_file: Optional file that receives a copy of every record.
        console: Attach a stream handler. The worker process passes ``False``.

    Returns:
        The configured package logger.
    """
    pkg_logger = logging.getLogger("isoworker")
    pkg_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    if console:
        if not any(
            type(h) is logging.StreamHandler for h in pkg_logger.handlers
        ):
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            pkg_logger.addHandler(handler)
    else:
        # Keep records away from logging.lastResort, which writes to sys.stderr.
        pkg_logger.propagate = False
        if not pkg_logger.handlers:
            pkg_logger.addHandler(logging.NullHandler())

    if log_file is not None:
        resolved = str(Path(log_file).resolve())
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == resolved
            for h in pkg_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            pkg_logger.addHandler(file_handler)

    return pkg_logger
