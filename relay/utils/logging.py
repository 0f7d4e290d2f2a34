"""
Logging helpers for the relay.

The root logger owns the only handler.  uvicorn is started with
``log_config=None`` and its loggers are pointed at the root here, so server
and relay records come out in the same format.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def route_server_loggers() -> None:
    """Drop uvicorn's own handlers so its records reach the root handler."""

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Configure the root handler once and route the server loggers through it.
    An existing root configuration is left alone.
    """

    if logging.getLogger().handlers:
        return

    logging.basicConfig(
        level=resolve_level(level),
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    route_server_loggers()
