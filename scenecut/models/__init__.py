"""Segmentation and extraction value objects and settings contracts."""

from scenecut.models.entities import (
    ArtifactKind,
    ExtractionResult,
    ExtractionTask,
    Segment,
    SegmentOrigin,
    Strategy,
    TaskFailure,
    VideoMetadata,
)
from scenecut.models.schema import ExtractionSettings

__all__ = [
    "ArtifactKind",
    "ExtractionResult",
    "ExtractionSettings",
    "ExtractionTask",
    "Segment",
    "SegmentOrigin",
    "Strategy",
    "TaskFailure",
    "VideoMetadata",
]
