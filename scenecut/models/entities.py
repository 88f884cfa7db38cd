"""Value objects for segmentation and extraction. Immutable once produced."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from scenecut.models.schema import ExtractionSettings


# --- Enums ---


class ArtifactKind(str, Enum):
    frame = "frame"
    clip = "clip"


class SegmentOrigin(str, Enum):
    """How a segment's boundaries were obtained."""

    detected = "detected"  # Scene-change events
    fixed_window = "fixed_window"  # No usable change points
    whole_video = "whole_video"  # Video too short for any >=1s window


class Strategy(str, Enum):
    """Which attempt of the retry policy produced an artifact."""

    primary = "primary"
    fallback = "fallback"


# --- Dataclasses ---


@dataclass(frozen=True)
class VideoMetadata:
    """Probe result for one source video."""

    duration: float
    width: int
    height: int
    fps: float
    codec: str | None = None
    bitrate: int | None = None

    @property
    def total_frames(self) -> int:
        return int(math.floor(self.duration * self.fps))

    @property
    def frame_time(self) -> float:
        return 1.0 / self.fps


@dataclass(frozen=True)
class Segment:
    """
    Frame-accurate extraction range [start_frame, end_frame).

    All times are derived from frame numbers (time = frame / fps) so that converting back with
    round(time * fps) yields the same frames.
    """

    index: int
    start_frame: int
    end_frame: int
    fps: float
    is_final: bool = False
    origin: SegmentOrigin = SegmentOrigin.detected

    @property
    def sequence(self) -> int:
        """1-based sequence number used in output filenames."""
        return self.index + 1

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame

    @property
    def start_time(self) -> float:
        return self.start_frame / self.fps

    @property
    def end_time(self) -> float:
        return self.end_frame / self.fps

    @property
    def duration(self) -> float:
        return self.frame_count / self.fps

    @property
    def mid_frame(self) -> int:
        return (self.start_frame + self.end_frame) // 2

    @property
    def mid_time(self) -> float:
        return self.mid_frame / self.fps

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "sequence": self.sequence,
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
            "frame_count": self.frame_count,
            "start_time": round(self.start_time, 6),
            "end_time": round(self.end_time, 6),
            "duration": round(self.duration, 6),
            "mid_frame": self.mid_frame,
            "is_final": self.is_final,
            "origin": self.origin.value,
        }


@dataclass(frozen=True)
class ExtractionTask:
    """One unit of work: extract `kind` for `segment` of `source_path`."""

    source_path: Path
    segment: Segment
    kind: ArtifactKind
    sequence: int
    original_index: int
    output_dir: Path
    settings: ExtractionSettings
    video_duration: float = 0.0

    @property
    def identifier(self) -> str:
        """Stable human-readable id, e.g. 'holiday_clip_007'."""
        return f"{self.source_path.stem}_{self.kind.value}_{self.sequence:03d}"


@dataclass(frozen=True)
class ExtractionResult:
    """
    A verified artifact on disk.

    start_time, end_time and duration are the segment's. capture_time is where in the source the
    artifact begins (the still's timestamp for frames), output_duration its media length.
    """

    output_path: Path
    filename: str
    kind: ArtifactKind
    sequence: int
    segment_index: int
    start_time: float
    end_time: float
    duration: float
    file_size: int
    strategy: Strategy
    method: str
    source_video: str
    success: bool = True
    capture_time: float = 0.0
    output_duration: float = 0.0

    @property
    def used_fallback(self) -> bool:
        return self.strategy is Strategy.fallback

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.output_path),
            "filename": self.filename,
            "kind": self.kind.value,
            "sequence": self.sequence,
            "segment_index": self.segment_index,
            "start_time": round(self.start_time, 6),
            "end_time": round(self.end_time, 6),
            "duration": round(self.duration, 6),
            "file_size": self.file_size,
            "strategy": self.strategy.value,
            "method": self.method,
            "source_video": self.source_video,
            "capture_time": round(self.capture_time, 6),
            "output_duration": round(self.output_duration, 6),
        }


@dataclass(frozen=True)
class TaskFailure:
    """A task that exhausted its attempts (or raised), kept for N/M reporting."""

    task: Any
    error: BaseException

    @property
    def identifier(self) -> str:
        ident = getattr(self.task, "identifier", None)
        if ident is not None:
            return str(ident)
        return f"task_{getattr(self.task, 'original_index', '?')}"
