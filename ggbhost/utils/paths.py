"""
Export path allocation.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str, extension: str) -> str:
    """Strip directories and odd characters, and force ``extension``."""
    clean = _SAFE_NAME.sub("_", Path(filename).name).strip("._") or "animation"
    stem = Path(clean).stem or "animation"
    return f"{stem}{extension}"


def allocate_export_path(
    export_dir: Path,
    extension: str,
    *,
    prefix: str = "animation",
    filename: Optional[str] = None,
) -> Path:
    """
    Pick ``filename`` or the next sequential ``<prefix><N>`` name inside
    ``export_dir``.  A requested name that is already taken gets a ``-<N>``
    suffix, so existing files are never reused.
    """
    export_dir.mkdir(parents=True, exist_ok=True)
    if filename:
        requested = export_dir / sanitize_filename(filename, extension)
        candidate = requested
        counter = 2
        while candidate.exists():
            candidate = export_dir / f"{requested.stem}-{counter}{extension}"
            counter += 1
        return candidate

    max_index = 0
    for existing in export_dir.iterdir():
        if existing.is_file() and existing.stem.startswith(prefix):
            suffix = existing.stem[len(prefix):]
            if suffix.isdigit():
                max_index = max(max_index, int(suffix))
    return export_dir / f"{prefix}{max_index + 1}{extension}"
