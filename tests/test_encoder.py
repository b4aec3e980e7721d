"""Tests covering GIF/video encoding through a fake ffmpeg."""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path

import pytest

from fakes import FakeFFmpeg, make_png
from ggbhost.animation.capture import Frame
from ggbhost.animation.encoder import (
    AUTO_EVEN_SCALE,
    FrameEncoder,
    decode_frame,
    even_dimensions,
    gif_palette_options,
)
from ggbhost.errors import EncodingError, ExportError


def make_frames(count: int = 3, width: int = 800, height: int = 600) -> list:
    return [
        Frame(index=index, value=float(index), data=make_png(width, height, shade=index * 30), width=width, height=height)
        for index in range(count)
    ]


def make_encoder(ffmpeg: FakeFFmpeg, tmp_path: Path, **kwargs) -> FrameEncoder:
    return FrameEncoder(staging_root=tmp_path / "staging", process_factory=ffmpeg, **kwargs)


def test_gif_uses_two_pass_palette(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    encoder = make_encoder(ffmpeg, tmp_path)
    output = tmp_path / "out" / "anim.gif"

    artifact = asyncio.run(encoder.convert_to_gif(make_frames(3), output, frame_rate=12, quality=80))

    assert artifact.path == output
    assert artifact.size == output.stat().st_size > 0
    assert (artifact.width, artifact.height) == (800, 600)
    assert artifact.frame_count == 3
    assert artifact.format == "gif"

    palette_call, encode_call = ffmpeg.calls
    assert "palettegen=max_colors=205:stats_mode=diff" in palette_call
    assert palette_call[-1].endswith("palette.png")
    assert palette_call[palette_call.index("-framerate") + 1] == "12"
    assert "paletteuse=dither=sierra2_4a" in encode_call
    assert encode_call[-1] == str(output)
    assert ffmpeg.staged[0] == ["frame_0000.png", "frame_0001.png", "frame_0002.png"]
    assert all(not directory.exists() for directory in ffmpeg.staging_dirs())
    assert ffmpeg.staging_dirs()[0].parent == tmp_path / "staging"


def test_video_rounds_explicit_dimensions_down_to_even(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    encoder = make_encoder(ffmpeg, tmp_path)
    output = tmp_path / "clip.mp4"

    artifact = asyncio.run(
        encoder.convert_to_video(make_frames(2, 801, 601), output, frame_rate=30, crf=18, width=801, height=601)
    )

    video_call = ffmpeg.calls[0]
    assert video_call[video_call.index("-vf") + 1] == "scale=800:600"
    assert video_call[video_call.index("-crf") + 1] == "18"
    assert video_call[video_call.index("-pix_fmt") + 1] == "yuv420p"
    assert "+faststart" in video_call
    assert ffmpeg.calls[1][0] == "ffprobe"
    assert (artifact.width, artifact.height) == (800, 600)


def test_video_without_dimensions_uses_even_scale_filter(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    encoder = make_encoder(ffmpeg, tmp_path)
    frames = [base64.b64encode(make_png(801, 601)).decode("ascii")] * 2

    artifact = asyncio.run(encoder.convert_to_video(frames, tmp_path / "auto.mp4"))

    video_call = ffmpeg.calls[0]
    assert video_call[video_call.index("-vf") + 1] == AUTO_EVEN_SCALE
    assert (artifact.width, artifact.height) == (800, 600)


def test_encoder_failure_carries_stderr(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    ffmpeg.fail_with = (1, "Invalid argument: height not divisible by 2")
    encoder = make_encoder(ffmpeg, tmp_path)

    with pytest.raises(EncodingError) as excinfo:
        asyncio.run(encoder.convert_to_video(make_frames(1), tmp_path / "bad.mp4"))

    error = excinfo.value
    assert error.returncode == 1
    assert error.stderr == "Invalid argument: height not divisible by 2"
    assert "height not divisible by 2" in str(error)
    assert error.to_dict()["stderr"] == error.stderr
    assert all(not directory.exists() for directory in ffmpeg.staging_dirs())


def test_missing_output_is_an_error(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    ffmpeg.write_output = False
    encoder = make_encoder(ffmpeg, tmp_path)

    with pytest.raises(EncodingError, match="no GIF output"):
        asyncio.run(encoder.convert_to_gif(make_frames(2), tmp_path / "empty.gif"))


def test_timeout_kills_encoder_and_cleans_staging(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    ffmpeg.hang = True
    encoder = make_encoder(ffmpeg, tmp_path, timeout=0.05)

    with pytest.raises(EncodingError, match="timed out"):
        asyncio.run(encoder.convert_to_gif(make_frames(2), tmp_path / "slow.gif"))

    assert ffmpeg.processes[0].killed
    assert all(not directory.exists() for directory in ffmpeg.staging_dirs())


def test_cancellation_kills_encoder_and_cleans_staging(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    ffmpeg.hang = True
    encoder = make_encoder(ffmpeg, tmp_path, timeout=60)

    async def scenario() -> None:
        job = asyncio.create_task(encoder.convert_to_video(make_frames(2), tmp_path / "cancel.mp4"))
        while not ffmpeg.processes:
            await asyncio.sleep(0.01)
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

    asyncio.run(scenario())

    assert ffmpeg.processes[0].killed
    assert all(not directory.exists() for directory in ffmpeg.staging_dirs())


def test_empty_frame_list_is_rejected(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    encoder = make_encoder(ffmpeg, tmp_path)

    with pytest.raises(ExportError, match="No frames"):
        asyncio.run(encoder.convert_to_gif([], tmp_path / "none.gif"))
    assert ffmpeg.calls == []


def test_quality_and_crf_ranges_are_validated(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    encoder = make_encoder(ffmpeg, tmp_path)

    with pytest.raises(ValueError):
        asyncio.run(encoder.convert_to_gif(make_frames(1), tmp_path / "a.gif", quality=0))
    with pytest.raises(ValueError):
        asyncio.run(encoder.convert_to_video(make_frames(1), tmp_path / "a.mp4", crf=60))


def test_check_available(ffmpeg: FakeFFmpeg, tmp_path: Path) -> None:
    assert asyncio.run(make_encoder(ffmpeg, tmp_path).check_available()) is True

    async def missing(*args, **kwargs):
        raise FileNotFoundError(args[0])

    encoder = FrameEncoder(process_factory=missing)
    assert asyncio.run(encoder.check_available()) is False


def test_even_dimensions() -> None:
    assert even_dimensions(801, 601) == (800, 600)
    assert even_dimensions(800, 600) == (800, 600)
    assert even_dimensions(1, 3) == (2, 2)


def test_gif_palette_options() -> None:
    assert gif_palette_options(100) == (256, "sierra2_4a")
    assert gif_palette_options(50) == (128, "bayer:bayer_scale=3")
    colors, dither = gif_palette_options(5)
    assert colors == 13
    assert dither == "none"


def test_decode_frame_accepts_supported_inputs() -> None:
    png = make_png(4, 4)
    encoded = base64.b64encode(png).decode("ascii")

    assert decode_frame(png) == png
    assert decode_frame(encoded) == png
    assert decode_frame("data:image/png;base64," + encoded) == png
    assert decode_frame(Frame(index=0, value=0.0, data=png)) == png
    with pytest.raises(ExportError):
        decode_frame("%%% not base64 %%%")
