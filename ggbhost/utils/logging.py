"""
Logging helpers for ggbhost.

The runtime modules only ever call ``logging.getLogger(__name__)``; where the
records go is decided here, once, by the process entrypoint.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
ENV_LOG_LEVEL = "LOG_LEVEL"


def resolve_level(level: Union[int, str, None] = None) -> int:
    """
    Turn ``level`` (or ``$LOG_LEVEL``) into a numeric logging level.
    """

    candidate = level if level is not None else os.environ.get(ENV_LOG_LEVEL)
    if candidate is None or candidate == "":
        return logging.INFO
    if isinstance(candidate, int):
        return candidate
    numeric = logging.getLevelName(str(candidate).strip().upper())
    return numeric if isinstance(numeric, int) else logging.INFO


def configure_logging(level: Union[int, str, None] = None, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=resolve_level(level),
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
