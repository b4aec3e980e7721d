"""
Animation export entry point: capture a sweep, then optionally encode it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config import CaptureConfig, HostConfig
from ..errors import ExportError
from ..runtime.instance import EngineInstance
from ..runtime.pool import InstancePool
from ..utils.paths import allocate_export_path
from .capture import AnimationExportJob, CaptureResult, Frame, FrameCaptureDriver
from .encoder import EncodedArtifact, FrameEncoder

LOG = logging.getLogger(__name__)

EXTENSIONS = {"gif": ".gif", "video": ".mp4"}


@dataclass
class AnimationExportResult:
    format: str
    capture: CaptureResult
    frame_rate: float
    artifact: Optional[EncodedArtifact] = None

    @property
    def frames(self) -> List[Frame]:
        return self.capture.frames

    @property
    def warnings(self) -> List[str]:
        return self.capture.warnings

    @property
    def degenerate(self) -> bool:
        return self.capture.degenerate

    def to_dict(self, include_frames: bool = True) -> dict:
        payload = {
            "format": self.format,
            "frameCount": len(self.capture.frames),
            "requestedFrames": self.capture.requested,
            "frameRate": self.frame_rate,
            "parameter": self.capture.parameter,
            "degenerate": self.capture.degenerate,
            "warnings": list(self.capture.warnings),
        }
        if self.artifact is not None:
            payload.update(self.artifact.to_dict())
        elif include_frames:
            payload["frames"] = [frame.to_dict() for frame in self.capture.frames]
        return payload


class AnimationExporter:
    def __init__(
        self,
        pool: InstancePool,
        encoder: FrameEncoder,
        *,
        export_dir: Path,
        capture_config: Optional[CaptureConfig] = None,
    ) -> None:
        self.pool = pool
        self.encoder = encoder
        self.export_dir = Path(export_dir)
        self.capture_config = capture_config or CaptureConfig()

    @classmethod
    def from_config(
        cls,
        config: HostConfig,
        pool: InstancePool,
        encoder: Optional[FrameEncoder] = None,
    ) -> "AnimationExporter":
        return cls(
            pool,
            encoder or FrameEncoder.from_config(config),
            export_dir=config.export_dir,
            capture_config=config.capture,
        )

    async def export_animation(
        self,
        job: AnimationExportJob,
        instance: Optional[EngineInstance] = None,
    ) -> AnimationExportResult:
        """
        Run ``job`` against ``instance`` (the pool's default instance when
        omitted).  ``format="frames"`` returns the captured frames; ``gif`` and
        ``video`` encode them into the export directory.
        """

        target = instance if instance is not None else await self.pool.get_default_instance()
        captured = await FrameCaptureDriver(target, self.capture_config).capture(job)
        if not captured.frames:
            raise ExportError(
                f"No animation frames captured ({captured.requested} requested)"
            )

        frame_rate = job.resolved_frame_rate()
        result = AnimationExportResult(format=job.format, capture=captured, frame_rate=frame_rate)
        if job.format == "frames":
            return result

        output = allocate_export_path(self.export_dir, EXTENSIONS[job.format], filename=job.filename)
        # claim the name before yielding to the loop so concurrent jobs pick another
        output.touch(exist_ok=False)
        try:
            if job.format == "gif":
                result.artifact = await self.encoder.convert_to_gif(
                    captured.frames, output, frame_rate=frame_rate, quality=job.quality
                )
            else:
                result.artifact = await self.encoder.convert_to_video(
                    captured.frames,
                    output,
                    frame_rate=frame_rate,
                    crf=job.crf,
                    width=job.width,
                    height=job.height,
                )
        except BaseException:
            output.unlink(missing_ok=True)
            raise

        LOG.info(
            "Animation exported: %s (%d frames, degenerate=%s)",
            result.artifact.path,
            len(captured.frames),
            captured.degenerate,
        )
        return result


__all__ = ["AnimationExportResult", "AnimationExporter"]
