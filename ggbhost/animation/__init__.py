"""
Animation capture and encoding.
"""

from __future__ import annotations

from .capture import AnimationExportJob, CaptureResult, Frame, FrameCaptureDriver
from .encoder import EncodedArtifact, FrameEncoder, even_dimensions
from .export import AnimationExporter, AnimationExportResult

__all__ = [
    "AnimationExportJob",
    "AnimationExportResult",
    "AnimationExporter",
    "CaptureResult",
    "EncodedArtifact",
    "Frame",
    "FrameCaptureDriver",
    "FrameEncoder",
    "even_dimensions",
]
