"""
Pydantic request bodies for the control API.
"""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator

from ..animation.capture import FORMATS, AnimationExportJob


class CommandRequest(BaseModel):
    command: str = Field(validation_alias=AliasChoices("command", "cmd"))

    model_config = ConfigDict(populate_by_name=True)

    @validator("command", pre=True)
    def _require_command(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("command is required")
        return result


class WarmupRequest(BaseModel):
    count: int = 1

    @validator("count")
    def _validate_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("count must be at least 1")
        return value


class RasterExportRequest(BaseModel):
    scale: float = 1.0
    transparent: bool = False
    dpi: int = 72
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)

    @validator("scale")
    def _positive_scale(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("scale must be positive")
        return value


class AnimationExportRequest(BaseModel):
    frame_count: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("frame_count", "frameCount", "frames"),
    )
    duration_ms: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("duration_ms", "durationMs", "duration"),
    )
    frame_rate: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("frame_rate", "frameRate", "fps"),
    )
    frame_delay_ms: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("frame_delay_ms", "frameDelayMs", "frameDelay", "frame_delay"),
    )
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    quality: int = Field(default=80, ge=1, le=100)
    crf: int = Field(default=23, ge=0, le=51)
    format: str = "frames"
    parameter: Optional[str] = None
    sweep_end: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("sweep_end", "sweepEnd"),
    )
    transparent: bool = False
    scale: float = 1.0
    filename: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @validator("format", pre=True)
    def _normalise_format(cls, value: object) -> str:
        result = str(value or "frames").strip().lower()
        if result in {"mp4", "h264"}:
            result = "video"
        if result not in FORMATS:
            raise ValueError(f"format must be one of {', '.join(FORMATS)}")
        return result

    @validator("frame_count")
    def _validate_frame_count(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("frameCount must be at least 1")
        return value

    @validator("duration_ms", "frame_rate", "frame_delay_ms")
    def _positive(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("must be positive")
        return value

    def to_job(self) -> AnimationExportJob:
        return AnimationExportJob(
            frame_count=self.frame_count,
            duration_ms=self.duration_ms,
            frame_rate=self.frame_rate,
            frame_delay_ms=self.frame_delay_ms,
            width=self.width,
            height=self.height,
            quality=self.quality,
            crf=self.crf,
            format=self.format,
            parameter=self.parameter,
            sweep_end=self.sweep_end,
            transparent=self.transparent,
            scale=self.scale,
            filename=self.filename,
        )
