"""
Frame capture for animation exports.

The driver sweeps one numeric parameter of a running construction across
evenly spaced samples and snapshots the graphics view after each step.  The
parameter is located by trial: a direct assignment is attempted against a
short list of conventional names until the engine accepts one.  The engine
accepts an assignment to an unknown name by creating a free number, so a
sweep that leaves every frame identical moves on to the next name.  Object
enumeration reports nothing for existing objects when the engine runs
headless and is not used to find the parameter.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import io
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from PIL import Image, UnidentifiedImageError

from ..config import CaptureConfig
from ..errors import CommandError, ConnectionError, EngineError
from ..runtime.instance import EngineInstance

LOG = logging.getLogger(__name__)

FORMATS = ("frames", "gif", "video")
DEFAULT_DURATION_MS = 5000.0
DEFAULT_FRAME_RATES = {"frames": 10.0, "gif": 10.0, "video": 30.0}


def png_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    """Read the pixel size of an encoded image, ``(None, None)`` when unreadable."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None, None
    return int(width), int(height)


@dataclass(frozen=True)
class Frame:
    index: int
    value: float
    data: bytes
    width: Optional[int] = None
    height: Optional[int] = None
    parameter: Optional[str] = None
    captured_at: float = field(default_factory=time.time)

    @property
    def checksum(self) -> str:
        return hashlib.sha1(self.data).hexdigest()

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_dict(self, include_data: bool = True) -> dict:
        payload = {
            "index": self.index,
            "value": self.value,
            "parameter": self.parameter,
            "width": self.width,
            "height": self.height,
            "checksum": self.checksum,
            "capturedAt": self.captured_at,
        }
        if include_data:
            payload["data"] = self.to_base64()
        return payload


@dataclass
class AnimationExportJob:
    """
    One animation request.

    Give either ``frame_count`` or ``duration_ms`` and either ``frame_rate``
    or ``frame_delay_ms``; missing values are derived from the others.
    """

    frame_count: Optional[int] = None
    duration_ms: Optional[float] = None
    frame_rate: Optional[float] = None
    frame_delay_ms: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    quality: int = 80
    crf: int = 23
    format: str = "frames"
    parameter: Optional[str] = None
    sweep_end: Optional[float] = None
    transparent: bool = False
    scale: float = 1.0
    filename: Optional[str] = None

    def __post_init__(self) -> None:
        if self.format not in FORMATS:
            raise ValueError(f"Unsupported animation format '{self.format}' (expected one of {FORMATS})")
        if self.frame_count is not None and int(self.frame_count) < 1:
            raise ValueError("frame_count must be at least 1")
        if self.duration_ms is not None and float(self.duration_ms) <= 0:
            raise ValueError("duration_ms must be positive")
        if self.frame_rate is not None and float(self.frame_rate) <= 0:
            raise ValueError("frame_rate must be positive")
        if self.frame_delay_ms is not None and float(self.frame_delay_ms) <= 0:
            raise ValueError("frame_delay_ms must be positive")

    def resolved_frame_rate(self) -> float:
        if self.frame_rate is not None:
            return float(self.frame_rate)
        if self.frame_delay_ms is not None:
            return 1000.0 / float(self.frame_delay_ms)
        return DEFAULT_FRAME_RATES[self.format]

    def resolved_frame_count(self) -> int:
        if self.frame_count is not None:
            return int(self.frame_count)
        duration = float(self.duration_ms) if self.duration_ms is not None else DEFAULT_DURATION_MS
        return max(1, math.ceil(duration / 1000.0 * self.resolved_frame_rate()))

    def sample_values(self, sweep_end: float) -> List[float]:
        end = float(self.sweep_end) if self.sweep_end is not None else float(sweep_end)
        count = self.resolved_frame_count()
        if count == 1:
            return [0.0]
        return [index * end / (count - 1) for index in range(count)]


@dataclass
class CaptureResult:
    frames: List[Frame] = field(default_factory=list)
    requested: int = 0
    parameter: Optional[str] = None
    failed_indices: List[int] = field(default_factory=list)
    degenerate: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - len(self.frames))


def _format_value(value: float) -> str:
    return format(float(value), ".10g")


def _is_flat(result: CaptureResult) -> bool:
    return len(result.frames) > 1 and len({frame.checksum for frame in result.frames}) == 1


class FrameCaptureDriver:
    """Runs a parameter sweep against one instance and collects frames."""

    def __init__(
        self,
        instance: EngineInstance,
        config: Optional[CaptureConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.instance = instance
        self.config = config or CaptureConfig()
        self._sleep = sleep
        self._working_name: Optional[str] = None
        self._excluded: List[str] = []
        self._checked: Set[str] = set()
        self._created: Set[str] = set()

    def _candidates(self, preferred: Optional[str]) -> List[str]:
        names: List[str] = []
        for name in [self._working_name, preferred, *self.config.candidates]:
            if name and name not in names and name not in self._excluded:
                names.append(name)
        return names

    async def _set_parameter(self, value: float, candidates: Sequence[str]) -> Optional[str]:
        for name in candidates:
            if name not in self._checked:
                # assigning an unknown name makes the engine create a free number
                self._checked.add(name)
                if not await self.instance.exists(name):
                    self._created.add(name)
            outcome = await self.instance.eval_command(f"{name} = {_format_value(value)}")
            if outcome.success:
                return name
        return None

    async def _pause_running_animation(self) -> bool:
        try:
            running = await self.instance.is_animation_running()
        except CommandError as exc:
            LOG.debug("Could not query animation state: %s", exc)
            return False
        if running:
            LOG.debug("Pausing engine animation for the sweep")
            try:
                await self.instance.stop_animation()
            except CommandError as exc:
                LOG.warning("Failed to pause engine animation: %s", exc)
        return running

    async def capture(self, job: AnimationExportJob) -> CaptureResult:
        """
        Sweep ``job`` and return the frames.

        A sweep whose frames are all identical means the accepted name does
        not drive anything.  That name is discarded (and deleted again when
        the sweep itself created it) and the sweep is repeated with the
        remaining candidates.  When none of them moves the construction the
        first sweep is returned and flagged as degenerate.
        """

        samples = job.sample_values(self.config.sweep_end)
        self._excluded = []
        self._checked = set()
        self._created = set()
        LOG.info("Capturing %d frame(s) (preferred parameter=%s)", len(samples), job.parameter)

        async with self.instance.exclusive():
            was_running = await self._pause_running_animation()
            try:
                result, used_names = await self._sweep(samples, job)
                first = (result, used_names)
                while _is_flat(result) and result.parameter is not None:
                    name = result.parameter
                    self._excluded.append(name)
                    if name in self._created:
                        LOG.debug("Removing '%s' created by the sweep", name)
                        await self.instance.delete_object(name)
                    if not self._candidates(job.parameter):
                        break
                    LOG.info("Parameter '%s' does not drive the construction; trying the next name", name)
                    retry = await self._sweep(samples, job)
                    if retry[0].parameter is None:
                        break
                    result, used_names = retry
                if _is_flat(result):
                    result, used_names = first
            finally:
                if was_running:
                    try:
                        await self.instance.start_animation()
                    except CommandError as exc:
                        LOG.warning("Failed to resume engine animation: %s", exc)

        self._flag_problems(result, used_names)
        return result

    async def _sweep(self, samples: Sequence[float], job: AnimationExportJob) -> Tuple[CaptureResult, List[str]]:
        result = CaptureResult(requested=len(samples))
        used_names: List[str] = []
        self._working_name = None
        for index, value in enumerate(samples):
            frame = await self._capture_one(index, value, job)
            if frame is None:
                result.failed_indices.append(index)
                continue
            if frame.parameter:
                used_names.append(frame.parameter)
            result.frames.append(frame)
        result.parameter = used_names[-1] if used_names else None
        return result, used_names

    async def _capture_one(self, index: int, value: float, job: AnimationExportJob) -> Optional[Frame]:
        try:
            name = await self._set_parameter(value, self._candidates(job.parameter))
            if name is None:
                LOG.debug("No candidate parameter accepted value %s", _format_value(value))
            else:
                self._working_name = name
            await self._sleep(self.config.settle_delay)
            encoded = await self.instance.export_raster(
                scale=job.scale,
                transparent=job.transparent,
                width=job.width,
                height=job.height,
            )
            data = base64.b64decode(encoded)
        except ConnectionError:
            raise
        except EngineError as exc:
            LOG.warning("Frame %d (value=%s) failed: %s", index, _format_value(value), exc)
            return None

        width, height = png_dimensions(data)
        return Frame(
            index=index,
            value=value,
            data=data,
            width=width,
            height=height,
            parameter=name,
        )

    @staticmethod
    def _flag_problems(result: CaptureResult, used_names: List[str]) -> None:
        if result.shortfall:
            message = (
                f"Captured {len(result.frames)} of {result.requested} requested frames "
                f"(failed: {result.failed_indices})"
            )
            LOG.warning(message)
            result.warnings.append(message)

        if not result.frames:
            return
        if not used_names:
            result.degenerate = True
            message = "No candidate parameter could be set; all frames show the same state"
            LOG.warning(message)
            result.warnings.append(message)
        elif _is_flat(result):
            result.degenerate = True
            message = (
                f"All {len(result.frames)} frames are identical; parameter "
                f"'{result.parameter}' does not drive the construction"
            )
            LOG.warning(message)
            result.warnings.append(message)


__all__ = [
    "AnimationExportJob",
    "CaptureResult",
    "FORMATS",
    "Frame",
    "FrameCaptureDriver",
    "png_dimensions",
]
