"""
ggbhost: a long-lived host for a browser-embedded geometry engine.

The package keeps engine instances (each one a headless Chromium page running
the applet) alive across many short requests, drives them through parameter
sweeps to produce animation frames and hands those frames to ffmpeg for GIF
or video encoding.  :mod:`ggbhost.api` exposes the operations over HTTP.
"""

from __future__ import annotations

from .config import HostConfig, load_config
from .errors import (
    CommandError,
    ConnectionError,
    EncodingError,
    EngineError,
    ExportError,
    PoolExhaustedError,
)

__version__ = "0.1.0"

__all__ = [
    "CommandError",
    "ConnectionError",
    "EncodingError",
    "EngineError",
    "ExportError",
    "HostConfig",
    "PoolExhaustedError",
    "__version__",
    "load_config",
]
