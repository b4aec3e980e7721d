"""Utility helpers for ggbhost."""

from .logging import configure_logging
from .paths import allocate_export_path

__all__ = ["allocate_export_path", "configure_logging"]
