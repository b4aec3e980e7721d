"""
Engine bundle retrieval.

The deploy script is fetched once per process and cached on disk so instances
launched later (or by the next process) do not pay for the download again.
When the fetch fails the host page falls back to referencing the URL.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Dict, Optional

import httpx

LOG = logging.getLogger(__name__)

_MEMORY_CACHE: Dict[str, str] = {}


def _cache_path(cache_dir: Path, url: str) -> Path:
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
    return cache_dir / f"bundle-{digest}.js"


async def load_bundle(
    url: str,
    cache_dir: Optional[Path] = None,
    *,
    timeout: float = 30.0,
) -> Optional[str]:
    """
    Return the bundle source for ``url`` or ``None`` when it cannot be fetched.
    """

    if url in _MEMORY_CACHE:
        return _MEMORY_CACHE[url]

    cached_file = _cache_path(cache_dir, url) if cache_dir is not None else None
    if cached_file is not None and cached_file.is_file():
        try:
            source = cached_file.read_text(encoding="utf-8")
        except OSError:
            LOG.debug("Unreadable bundle cache %s", cached_file, exc_info=True)
        else:
            _MEMORY_CACHE[url] = source
            return source

    headers = {"User-Agent": "ggbhost/1.0"}
    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0), follow_redirects=True
        ) as client:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        LOG.warning("Engine bundle fetch failed (%s); page will load it by URL.", exc)
        return None

    source = response.text
    if cached_file is not None:
        try:
            cached_file.parent.mkdir(parents=True, exist_ok=True)
            cached_file.write_text(source, encoding="utf-8")
        except OSError:
            LOG.debug("Failed to write bundle cache %s", cached_file, exc_info=True)
    _MEMORY_CACHE[url] = source
    LOG.info("Engine bundle loaded from %s (%d bytes)", url, len(source))
    return source


def clear_bundle_cache() -> None:
    _MEMORY_CACHE.clear()
