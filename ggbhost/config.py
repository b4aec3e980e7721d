"""
Host configuration.

Profiles live in ``configs/profiles.yaml`` next to this module.  A profile is a
nested mapping whose sections mirror the dataclasses below; anything missing
falls back to the defaults.  A handful of environment variables override the
profile so deployments can relocate exports or point at a different ffmpeg
without editing YAML.
"""

from __future__ import annotations

import logging
import math
import os
import tempfile
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

ENV_PROFILE = "GGBHOST_PROFILE"
ENV_EXPORT_DIR = "GGBHOST_EXPORT_DIR"
ENV_TEMP_DIR = "GGBHOST_TEMP_DIR"
ENV_FFMPEG = "GGBHOST_FFMPEG"
ENV_HEADLESS = "GGBHOST_HEADLESS"

DEFAULT_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]

DEFAULT_PARAMETER_CANDIDATES = ["t", "slider", "a", "k", "n", "param", "angle", "time"]


@dataclass
class InstanceConfig:
    """Creation configuration of one engine instance (viewport, UI chrome, locale)."""

    app_name: str = "classic"
    width: int = 800
    height: int = 600
    show_menu_bar: bool = False
    show_tool_bar: bool = False
    show_algebra_input: bool = False
    show_reset_icon: bool = False
    enable_right_click: bool = True
    language: str = "en"
    headless: bool = True
    browser_args: List[str] = field(default_factory=lambda: list(DEFAULT_BROWSER_ARGS))
    bundle_url: str = "https://www.geogebra.org/apps/deployggb.js"


@dataclass
class PoolConfig:
    max_instances: int = 3
    instance_timeout: float = 300.0
    max_idle_time: float = 600.0
    reap_interval: float = 60.0
    acquire_timeout: float = 30.0


@dataclass
class TimeoutConfig:
    startup: float = 30.0
    command: float = 10.0
    export: float = 60.0
    encoder: float = 120.0
    handshake_poll: float = 0.25


@dataclass
class CaptureConfig:
    settle_delay: float = 0.1
    sweep_end: float = math.tau
    candidates: List[str] = field(default_factory=lambda: list(DEFAULT_PARAMETER_CANDIDATES))


@dataclass
class EncoderConfig:
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    video_codec: str = "libx264"
    pixel_format: str = "yuv420p"


@dataclass
class HostConfig:
    """Top level configuration for the host process."""

    profile: str = "default"
    instance: InstanceConfig = field(default_factory=InstanceConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    export_dir: Path = field(default_factory=lambda: Path.cwd() / "exports")
    temp_dir: Optional[Path] = None

    def ensure_directories(self) -> None:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)

    @property
    def staging_root(self) -> Path:
        return self.temp_dir if self.temp_dir is not None else Path(tempfile.gettempdir())


def _apply_section(target: Any, payload: Dict[str, Any]) -> None:
    known = {item.name: item for item in fields(target)}
    for key, value in payload.items():
        if key not in known:
            LOG.warning("Ignoring unknown config key '%s' for %s", key, type(target).__name__)
            continue
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, dict):
            _apply_section(current, value)
        elif key == "export_dir":
            if value:
                setattr(target, key, Path(value).expanduser())
        elif key == "temp_dir":
            setattr(target, key, Path(value).expanduser() if value else None)
        else:
            setattr(target, key, value)


def read_profiles(path: Path = PROFILES_PATH) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        profiles = {}
    if not isinstance(profiles, dict):
        raise ValueError(f"{path} must contain a mapping of profiles")
    return profiles


def _env_flag(value: str) -> bool:
    return value.strip().lower() not in {"0", "false", "no", "off", ""}


def load_config(
    profile: Optional[str] = None,
    *,
    path: Path = PROFILES_PATH,
    environ: Optional[Dict[str, str]] = None,
) -> HostConfig:
    """
    Resolve a :class:`HostConfig` from the profiles file and the environment.
    """

    env = os.environ if environ is None else environ
    name = profile or env.get(ENV_PROFILE) or "default"
    profiles = read_profiles(path)

    config = HostConfig(profile=name)
    base = profiles.get("default") or {}
    _apply_section(config, base)
    if name != "default":
        if name not in profiles:
            raise KeyError(f"Unknown profile '{name}'")
        _apply_section(config, profiles.get(name) or {})
    config.profile = name

    if env.get(ENV_EXPORT_DIR):
        config.export_dir = Path(env[ENV_EXPORT_DIR]).expanduser()
    if env.get(ENV_TEMP_DIR):
        config.temp_dir = Path(env[ENV_TEMP_DIR]).expanduser()
    if env.get(ENV_FFMPEG):
        config.encoder.ffmpeg = env[ENV_FFMPEG]
    if ENV_HEADLESS in env:
        config.instance.headless = _env_flag(env[ENV_HEADLESS])

    return config


__all__ = [
    "CaptureConfig",
    "DEFAULT_BROWSER_ARGS",
    "DEFAULT_PARAMETER_CANDIDATES",
    "EncoderConfig",
    "HostConfig",
    "InstanceConfig",
    "PoolConfig",
    "TimeoutConfig",
    "load_config",
    "read_profiles",
]
