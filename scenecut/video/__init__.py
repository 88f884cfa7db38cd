"""FFmpeg process running, metadata probing, scene segmentation and per-segment extraction."""

from scenecut.video.extractors import ClipExtractor, ExtractionTaskError, FrameExtractor, SegmentExtractor
from scenecut.video.probe import AnalysisError, probe_video_metadata
from scenecut.video.process_runner import ProcessLaunchError, ProcessResult, ProcessRunner
from scenecut.video.segment_detector import Detection, SegmentDetector

__all__ = [
    "AnalysisError",
    "ClipExtractor",
    "Detection",
    "ExtractionTaskError",
    "FrameExtractor",
    "ProcessLaunchError",
    "ProcessResult",
    "ProcessRunner",
    "SegmentDetector",
    "SegmentExtractor",
    "probe_video_metadata",
]
