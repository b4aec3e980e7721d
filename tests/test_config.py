"""Tests covering profile loading, environment overrides and small helpers."""

from __future__ import annotations

import logging
import math
from pathlib import Path

import pytest

from ggbhost.config import InstanceConfig, load_config, read_profiles
from ggbhost.runtime.applet import render_applet_html
from ggbhost.utils.logging import resolve_level
from ggbhost.utils.paths import allocate_export_path, sanitize_filename


def test_default_profile_matches_built_in_defaults() -> None:
    config = load_config(environ={})

    assert config.profile == "default"
    assert config.pool.max_instances == 3
    assert config.timeouts.startup == 30
    assert config.timeouts.export > config.timeouts.command
    assert config.capture.settle_delay == pytest.approx(0.1)
    assert config.capture.sweep_end == pytest.approx(math.tau)
    assert config.capture.candidates[:2] == ["t", "slider"]
    assert config.export_dir == Path("exports")
    assert config.temp_dir is None


def test_named_profile_layers_over_default() -> None:
    config = load_config("debug", environ={})

    assert config.profile == "debug"
    assert config.instance.headless is False
    assert config.pool.max_instances == 1
    assert config.timeouts.startup == 60
    assert config.timeouts.command == 10


def test_unknown_profile_raises() -> None:
    with pytest.raises(KeyError):
        load_config("does-not-exist", environ={})


def test_environment_overrides(tmp_path: Path) -> None:
    environ = {
        "GGBHOST_PROFILE": "benchmark",
        "GGBHOST_EXPORT_DIR": str(tmp_path / "out"),
        "GGBHOST_TEMP_DIR": str(tmp_path / "tmp"),
        "GGBHOST_FFMPEG": "/opt/ffmpeg/bin/ffmpeg",
        "GGBHOST_HEADLESS": "0",
    }

    config = load_config(environ=environ)

    assert config.profile == "benchmark"
    assert config.pool.max_instances == 4
    assert config.export_dir == tmp_path / "out"
    assert config.staging_root == tmp_path / "tmp"
    assert config.encoder.ffmpeg == "/opt/ffmpeg/bin/ffmpeg"
    assert config.instance.headless is False

    config.ensure_directories()
    assert (tmp_path / "out").is_dir()
    assert (tmp_path / "tmp").is_dir()


def test_custom_profiles_file_ignores_unknown_keys(tmp_path: Path, caplog) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text(
        "default:\n"
        "  pool:\n"
        "    max_instances: 2\n"
        "    colour: blue\n"
        "  temp_dir: scratch\n",
        encoding="utf-8",
    )

    with caplog.at_level(logging.WARNING):
        config = load_config(path=path, environ={})

    assert config.pool.max_instances == 2
    assert config.temp_dir == Path("scratch")
    assert "colour" in caplog.text


def test_read_profiles_missing_file(tmp_path: Path) -> None:
    assert read_profiles(tmp_path / "missing.yaml") == {}


def test_resolve_level(monkeypatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    assert resolve_level() == logging.INFO
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(logging.WARNING) == logging.WARNING
    assert resolve_level("chatty") == logging.INFO
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    assert resolve_level() == logging.ERROR


def test_allocate_export_path_is_sequential(tmp_path: Path) -> None:
    first = allocate_export_path(tmp_path, ".gif")
    assert first.name == "animation1.gif"
    first.write_bytes(b"x")
    (tmp_path / "animation7.mp4").write_bytes(b"x")
    assert allocate_export_path(tmp_path, ".gif").name == "animation8.gif"
    assert allocate_export_path(tmp_path, ".gif", filename="../../etc/my clip.gif").name == "my_clip.gif"
    (tmp_path / "my_clip.gif").write_bytes(b"x")
    (tmp_path / "my_clip-2.gif").write_bytes(b"x")
    assert allocate_export_path(tmp_path, ".gif", filename="my clip").name == "my_clip-3.gif"


def test_sanitize_filename() -> None:
    assert sanitize_filename("demo.mp4", ".gif") == "demo.gif"
    assert sanitize_filename("...", ".gif") == "animation.gif"


def test_applet_page_inlines_bundle() -> None:
    config = InstanceConfig(width=640, height=480)

    inline = render_applet_html(config, "var x = '</script>';")
    referenced = render_applet_html(config)

    assert "<\\/script>" in inline
    assert config.bundle_url not in inline
    assert f'src="{config.bundle_url}"' in referenced
    assert '"width": 640' in referenced
    assert "window.ggbReady = true" in referenced
