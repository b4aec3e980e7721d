"""End-to-end animation exports against fake engine and encoder processes."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fakes import FakeApplet, FakeFFmpeg, FakeLauncher, fast_timeouts, no_bundle
from ggbhost.animation.capture import AnimationExportJob
from ggbhost.animation.encoder import FrameEncoder
from ggbhost.animation.export import AnimationExporter
from ggbhost.config import CaptureConfig, InstanceConfig, PoolConfig
from ggbhost.errors import EncodingError, ExportError
from ggbhost.runtime.instance import EngineInstance
from ggbhost.runtime.pool import InstancePool


def build_exporter(launcher: FakeLauncher, ffmpeg: FakeFFmpeg, tmp_path: Path) -> AnimationExporter:
    def factory() -> EngineInstance:
        return EngineInstance(InstanceConfig(), timeouts=fast_timeouts(), launcher=launcher, bundle_loader=no_bundle)

    pool = InstancePool(PoolConfig(), instance_factory=factory)
    encoder = FrameEncoder(staging_root=tmp_path / "staging", process_factory=ffmpeg)
    return AnimationExporter(
        pool,
        encoder,
        export_dir=tmp_path / "exports",
        capture_config=CaptureConfig(settle_delay=0.0),
    )


def run_exports(exporter: AnimationExporter, *jobs: AnimationExportJob) -> list:
    async def scenario() -> list:
        try:
            return [await exporter.export_animation(job) for job in jobs]
        finally:
            await exporter.pool.cleanup()

    return asyncio.run(scenario())


def test_frames_format_returns_captured_frames(launcher: FakeLauncher, ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    exporter = build_exporter(launcher, ffmpeg, tmp_path)

    (result,) = run_exports(exporter, AnimationExportJob(frame_count=5, frame_delay_ms=200))

    assert len(result.frames) == 5
    assert result.artifact is None
    payload = result.to_dict()
    assert payload["frameCount"] == 5
    assert payload["frameRate"] == pytest.approx(5.0)
    assert payload["degenerate"] is False
    assert len(payload["frames"]) == 5
    assert payload["frames"][0]["data"]
    assert ffmpeg.calls == []


def test_gif_exports_get_sequential_names(launcher: FakeLauncher, ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    exporter = build_exporter(launcher, ffmpeg, tmp_path)
    job = AnimationExportJob(frame_count=3, format="gif")

    first, second = run_exports(exporter, job, job)

    assert first.artifact.path == tmp_path / "exports" / "animation1.gif"
    assert second.artifact.path == tmp_path / "exports" / "animation2.gif"
    payload = first.to_dict()
    assert payload["filename"] == "animation1.gif"
    assert payload["size"] > 0
    assert "frames" not in payload
    assert launcher.launches == 1


def test_video_export_has_even_dimensions(launcher: FakeLauncher, ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    exporter = build_exporter(launcher, ffmpeg, tmp_path)
    job = AnimationExportJob(frame_count=4, format="video", width=801, height=601, filename="clip")

    (result,) = run_exports(exporter, job)

    assert result.artifact.path == tmp_path / "exports" / "clip.mp4"
    assert (result.artifact.width, result.artifact.height) == (800, 600)


def test_no_frames_raises_export_error(launcher: FakeLauncher, ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    def applet() -> FakeApplet:
        fake = FakeApplet()
        fake.fail_export_at = set(range(10))
        return fake

    launcher.applet_factory = applet
    exporter = build_exporter(launcher, ffmpeg, tmp_path)

    with pytest.raises(ExportError, match="No animation frames"):
        run_exports(exporter, AnimationExportJob(frame_count=3, format="gif"))
    assert ffmpeg.calls == []


def test_failed_encode_leaves_no_output(launcher: FakeLauncher, ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    ffmpeg.fail_with = (1, "Unknown encoder 'libx264'")
    exporter = build_exporter(launcher, ffmpeg, tmp_path)

    with pytest.raises(EncodingError, match="libx264"):
        run_exports(exporter, AnimationExportJob(frame_count=2, format="video"))
    assert list((tmp_path / "exports").iterdir()) == []


def test_named_export_never_replaces_an_earlier_file(launcher: FakeLauncher, ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    exporter = build_exporter(launcher, ffmpeg, tmp_path)
    job = AnimationExportJob(frame_count=2, format="gif", filename="lesson")

    async def scenario() -> None:
        try:
            first = await exporter.export_animation(job)
            assert first.artifact.path == tmp_path / "exports" / "lesson.gif"

            ffmpeg.fail_with = (1, "boom")
            with pytest.raises(EncodingError, match="boom"):
                await exporter.export_animation(job)
            assert first.artifact.path.read_bytes() == b"encoded-output"

            ffmpeg.fail_with = None
            second = await exporter.export_animation(job)
            assert second.artifact.path == tmp_path / "exports" / "lesson-2.gif"
        finally:
            await exporter.pool.cleanup()

    asyncio.run(scenario())
    assert sorted(path.name for path in (tmp_path / "exports").iterdir()) == ["lesson-2.gif", "lesson.gif"]
