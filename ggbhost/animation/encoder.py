"""
Frame encoder.

Turns a captured frame sequence into a GIF or an H.264 video by staging the
frames as numbered PNG files and invoking ffmpeg.  Each job stages into its
own temporary directory, which is removed on every exit path, and any ffmpeg
process still running when a job times out or is cancelled is killed.

GIF ``quality`` (1-100) and video ``crf`` (0-51) are separate knobs on
opposite scales: a higher GIF quality and a *lower* CRF both mean better
output.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, Union

from ..config import EncoderConfig, HostConfig
from ..errors import EncodingError, ExportError
from .capture import Frame, png_dimensions

LOG = logging.getLogger(__name__)

FrameInput = Union[Frame, bytes, str]

# Used when no frame reports its own pixel size.
DEFAULT_CANVAS_SIZE = (800, 600)

FRAME_PATTERN = "frame_%04d.png"
DATA_URL_PREFIX = "data:image/png;base64,"

# Rounds the larger side down to an even number and keeps the aspect ratio.
AUTO_EVEN_SCALE = (
    "scale='if(gt(iw,ih),trunc(iw/2)*2,trunc(ih*dar/2)*2)'"
    ":'if(gt(iw,ih),trunc(ih/2)*2,trunc(iw/dar/2)*2)'"
)


def even_dimensions(width: int, height: int) -> Tuple[int, int]:
    """Floor both sides to the nearest even number (minimum 2)."""
    return max(2, int(width) // 2 * 2), max(2, int(height) // 2 * 2)


def gif_palette_options(quality: int) -> Tuple[int, str]:
    """Map GIF quality (1-100) to a palette size and a dithering mode."""
    quality = max(1, min(100, int(quality)))
    colors = max(2, min(256, round(256 * quality / 100)))
    if quality >= 70:
        dither = "sierra2_4a"
    elif quality >= 40:
        dither = "bayer:bayer_scale=3"
    else:
        dither = "none"
    return colors, dither


def decode_frame(frame: FrameInput, index: int = 0) -> bytes:
    if isinstance(frame, Frame):
        return frame.data
    if isinstance(frame, (bytes, bytearray)):
        return bytes(frame)
    if isinstance(frame, str):
        payload = frame.strip()
        if payload.startswith(DATA_URL_PREFIX):
            payload = payload[len(DATA_URL_PREFIX):]
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ExportError(f"Frame {index} is not valid base64 image data") from exc
    raise ExportError(f"Frame {index} has unsupported type {type(frame).__name__}")


@dataclass
class EncodedArtifact:
    path: Path
    size: int
    format: str
    width: Optional[int] = None
    height: Optional[int] = None
    frame_count: int = 0
    frame_rate: float = 0.0

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "filename": self.path.name,
            "size": self.size,
            "format": self.format,
            "width": self.width,
            "height": self.height,
            "frameCount": self.frame_count,
            "frameRate": self.frame_rate,
        }


class FrameEncoder:
    def __init__(
        self,
        config: Optional[EncoderConfig] = None,
        *,
        timeout: float = 120.0,
        staging_root: Optional[Path] = None,
        process_factory: Callable[..., Any] = asyncio.create_subprocess_exec,
    ) -> None:
        self.config = config or EncoderConfig()
        self.timeout = float(timeout)
        self.staging_root = staging_root
        self._spawn = process_factory

    @classmethod
    def from_config(cls, config: HostConfig, **kwargs) -> "FrameEncoder":
        return cls(
            config.encoder,
            timeout=config.timeouts.encoder,
            staging_root=config.temp_dir,
            **kwargs,
        )

    # ---- process plumbing

    async def _run(self, args: Sequence[str], *, description: str) -> str:
        command = [str(arg) for arg in args]
        LOG.debug("Running %s: %s", description, " ".join(command))
        try:
            process = await self._spawn(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise EncodingError(f"Encoder executable not found: {command[0]}", command=command) from exc

        try:
            _stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise EncodingError(
                f"{description} timed out after {self.timeout:g}s", command=command
            ) from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        text = (stderr or b"").decode("utf-8", errors="replace")
        if process.returncode != 0:
            raise EncodingError(
                f"{description} failed with exit code {process.returncode}",
                stderr=text,
                returncode=process.returncode,
                command=command,
            )
        return text

    @staticmethod
    async def _kill(process: Any) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        LOG.warning("Encoder process terminated before completion")

    async def check_available(self) -> bool:
        """True when the configured ffmpeg can be started."""
        try:
            await self._run([self.config.ffmpeg, "-version"], description="ffmpeg version check")
        except EncodingError as exc:
            LOG.warning("ffmpeg is not available: %s", exc)
            return False
        return True

    async def probe_dimensions(self, path: Path) -> Optional[Tuple[int, int]]:
        """Best-effort read of the first video stream's size via ffprobe."""
        try:
            output = await self._run(
                [
                    self.config.ffprobe,
                    "-v",
                    "error",
                    "-select_streams",
                    "v:0",
                    "-show_entries",
                    "stream=width,height",
                    "-of",
                    "csv=s=x:p=0",
                    str(path),
                ],
                description="ffprobe",
            )
        except EncodingError as exc:
            LOG.debug("ffprobe failed for %s: %s", path, exc)
            return None
        return _parse_probe(output)

    # ---- staging

    def _staging_dir(self) -> "tempfile.TemporaryDirectory[str]":
        root = self.staging_root
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)
        return tempfile.TemporaryDirectory(prefix="ggbhost-frames-", dir=str(root) if root else None)

    @staticmethod
    def _stage(frames: Iterable[FrameInput], directory: Path) -> Tuple[int, Tuple[int, int]]:
        count = 0
        size: Optional[Tuple[int, int]] = None
        for index, frame in enumerate(frames):
            data = decode_frame(frame, index)
            (directory / (FRAME_PATTERN % count)).write_bytes(data)
            if size is None:
                if isinstance(frame, Frame) and frame.width and frame.height:
                    size = (frame.width, frame.height)
                else:
                    width, height = png_dimensions(data)
                    if width and height:
                        size = (width, height)
            count += 1
        if count == 0:
            raise ExportError("No frames to encode")
        if size is None:
            LOG.warning("Frame size unknown; assuming %dx%d", *DEFAULT_CANVAS_SIZE)
            size = DEFAULT_CANVAS_SIZE
        return count, size

    @staticmethod
    def _collect(output: Path, fmt: str, stderr: str) -> int:
        try:
            size = output.stat().st_size
        except FileNotFoundError:
            size = 0
        if size <= 0:
            raise EncodingError(f"Encoder produced no {fmt} output at {output}", stderr=stderr, returncode=0)
        return size

    # ---- public API

    async def convert_to_gif(
        self,
        frames: Sequence[FrameInput],
        output_path: Union[str, Path],
        frame_rate: float = 10,
        quality: int = 80,
    ) -> EncodedArtifact:
        if frame_rate <= 0:
            raise ValueError("frame_rate must be positive")
        if not 1 <= int(quality) <= 100:
            raise ValueError("GIF quality must be between 1 and 100")

        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        colors, dither = gif_palette_options(quality)
        LOG.info("Encoding %d frame(s) to GIF %s (rate=%s, quality=%s)", len(frames), output, frame_rate, quality)

        with self._staging_dir() as tmp:
            staging = Path(tmp)
            count, (width, height) = self._stage(frames, staging)
            pattern = staging / FRAME_PATTERN
            palette = staging / "palette.png"
            base = [self.config.ffmpeg, "-y", "-hide_banner", "-loglevel", "error"]
            await self._run(
                base
                + ["-framerate", f"{frame_rate:g}", "-i", pattern]
                + ["-vf", f"palettegen=max_colors={colors}:stats_mode=diff", palette],
                description="GIF palette generation",
            )
            stderr = await self._run(
                base
                + ["-framerate", f"{frame_rate:g}", "-i", pattern, "-i", palette]
                + ["-lavfi", f"paletteuse=dither={dither}", "-loop", "0", output],
                description="GIF encoding",
            )

        size = self._collect(output, "GIF", stderr)
        LOG.info("GIF written: %s (%d bytes)", output, size)
        return EncodedArtifact(
            path=output,
            size=size,
            format="gif",
            width=width,
            height=height,
            frame_count=count,
            frame_rate=float(frame_rate),
        )

    async def convert_to_video(
        self,
        frames: Sequence[FrameInput],
        output_path: Union[str, Path],
        frame_rate: float = 30,
        crf: int = 23,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> EncodedArtifact:
        if frame_rate <= 0:
            raise ValueError("frame_rate must be positive")
        if not 0 <= int(crf) <= 51:
            raise ValueError("crf must be between 0 and 51")

        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        LOG.info("Encoding %d frame(s) to video %s (rate=%s, crf=%s)", len(frames), output, frame_rate, crf)

        with self._staging_dir() as tmp:
            staging = Path(tmp)
            count, (frame_width, frame_height) = self._stage(frames, staging)
            if width is not None or height is not None:
                target = even_dimensions(width or frame_width, height or frame_height)
                scale_filter = f"scale={target[0]}:{target[1]}"
            else:
                target = even_dimensions(frame_width, frame_height)
                scale_filter = AUTO_EVEN_SCALE
            stderr = await self._run(
                [self.config.ffmpeg, "-y", "-hide_banner", "-loglevel", "error"]
                + ["-framerate", f"{frame_rate:g}", "-i", staging / FRAME_PATTERN]
                + ["-vf", scale_filter]
                + ["-c:v", self.config.video_codec, "-pix_fmt", self.config.pixel_format]
                + ["-crf", str(int(crf)), "-movflags", "+faststart", output],
                description="Video encoding",
            )

        size = self._collect(output, "video", stderr)
        probed = await self.probe_dimensions(output)
        final_width, final_height = probed if probed else target
        LOG.info("Video written: %s (%d bytes, %dx%d)", output, size, final_width, final_height)
        return EncodedArtifact(
            path=output,
            size=size,
            format="video",
            width=final_width,
            height=final_height,
            frame_count=count,
            frame_rate=float(frame_rate),
        )


def _parse_probe(output: str) -> Optional[Tuple[int, int]]:
    for line in output.splitlines():
        parts: List[str] = line.strip().split("x")
        if len(parts) == 2 and all(part.isdigit() for part in parts):
            return int(parts[0]), int(parts[1])
    return None


__all__ = [
    "AUTO_EVEN_SCALE",
    "DEFAULT_CANVAS_SIZE",
    "EncodedArtifact",
    "FrameEncoder",
    "decode_frame",
    "even_dimensions",
    "gif_palette_options",
]
