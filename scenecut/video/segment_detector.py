"""Scene-change detection (FFmpeg scene score + showinfo) and frame-accurate segment refinement."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from scenecut.core.progress import ProgressChannel, null_channel
from scenecut.models.entities import Segment, SegmentOrigin, VideoMetadata
from scenecut.video.probe import AnalysisError, probe_video_metadata
from scenecut.video.process_runner import ProcessLaunchError, ProcessRunner

_log = logging.getLogger(__name__)

PTS_REGEX = re.compile(r"pts_time:\s*(\d+(?:\.\d+)?)")
OUT_TIME_REGEX = re.compile(r"^out_time_ms=(\d+)")
MIN_SEPARATION_SEC = 1.0
DEFAULT_WINDOW_SEC = 10.0
DETECT_TIMEOUT_BASE_SEC = 60.0
DETECT_TIMEOUT_PER_SEC = 2.0

# Local progress milestones for one detect() call.
_PROBE_DONE = 0.1
_STREAM_DONE = 0.9


def parse_pts_time(line: str) -> float | None:
    """Return pts_time from a showinfo line, or None if the line carries no frame timestamp."""
    if "showinfo" not in line or "pts_time:" not in line:
        return None
    m = PTS_REGEX.search(line)
    if m is None:
        return None
    try:
        return float(m.group(1))
    except ValueError:
        return None


def parse_progress_seconds(line: str) -> float | None:
    """Return encoded position in seconds from an FFmpeg `-progress` line (out_time_ms is microseconds)."""
    m = OUT_TIME_REGEX.match(line)
    if m is None:
        return None
    return int(m.group(1)) / 1_000_000.0


def filter_change_times(
    times: Iterable[float],
    duration: float,
    min_separation: float = MIN_SEPARATION_SEC,
) -> list[float]:
    """
    Deduplicate and sort raw change events, then drop any event closer than min_separation to the
    previously accepted one. Events at or before 0 and at or past the end of the video are ignored.
    """
    accepted: list[float] = []
    last = -math.inf
    for t in sorted(set(times)):
        if t <= 0 or t >= duration:
            continue
        if t - last >= min_separation:
            accepted.append(t)
            last = t
    return accepted


def times_to_frames(times: Iterable[float], fps: float) -> list[int]:
    """Convert seconds to sorted unique frame numbers (round(t * fps))."""
    return sorted({int(round(t * fps)) for t in times})


def min_span_frames(fps: float) -> int:
    """Smallest frame count whose duration is at least 1 second."""
    return max(1, math.ceil(fps))


def _span(prev: int, cur: int, in_handle: int, out_handle: int, min_span: int) -> tuple[int, int]:
    """Handle-adjusted [start, end) between two boundaries; the out-point is floor-clamped to start + min_span."""
    start = prev + in_handle
    end = max(cur - out_handle, start + min_span)
    return start, end


def merge_edge_cuts(cut_frames: Sequence[int], total_frames: int, min_span: int) -> list[int]:
    """
    Drop cut points closer than min_span to the video start or end.

    The sliver before the first cut (or after the last one) joins its neighbouring segment,
    which then runs to the video boundary.
    """
    cuts = sorted({c for c in cut_frames if 0 < c < total_frames})
    while cuts and total_frames - cuts[-1] < min_span:
        _log.debug("Merging tail cut at frame %d into final segment", cuts[-1])
        cuts.pop()
    while cuts and cuts[0] < min_span:
        _log.debug("Merging head cut at frame %d into first segment", cuts[0])
        cuts.pop(0)
    return cuts


def build_segments(
    cut_frames: Sequence[int],
    total_frames: int,
    fps: float,
    in_handle: int,
    out_handle: int,
    *,
    origin: SegmentOrigin = SegmentOrigin.detected,
) -> list[Segment]:
    """
    Build ordered, non-overlapping segments over boundaries [0, *cut_frames, total_frames].

    Handles larger than a gap clamp the out-point up to one second past the in-point. An
    interior out-point never passes the next segment's in-point. The final segment is capped
    at the last frame; if that leaves less than a second its in-point is pulled back (never
    before the previous segment's end). Spans still shorter than a second are discarded.
    """
    min_span = min_span_frames(fps)
    bounds = [0, *sorted({c for c in cut_frames if 0 < c < total_frames}), total_frames]
    pairs = list(zip(bounds, bounds[1:]))
    spans: list[tuple[int, int]] = []
    floor = 0
    for i, (prev, cur) in enumerate(pairs):
        start, end = _span(prev, cur, in_handle, out_handle, min_span)
        start = max(start, floor)
        if i == len(pairs) - 1:
            end = min(end, total_frames)
            if end - start < min_span:
                start = max(floor, end - min_span)
        else:
            end = min(end, cur + in_handle, total_frames)
        if end - start < min_span:
            _log.debug("Dropping sub-1s segment between frames %d and %d", prev, cur)
            continue
        spans.append((start, end))
        floor = end
    last = len(spans) - 1
    return [
        Segment(
            index=i,
            start_frame=start,
            end_frame=end,
            fps=fps,
            is_final=i == last,
            origin=origin,
        )
        for i, (start, end) in enumerate(spans)
    ]


def fixed_window_segments(
    total_frames: int,
    fps: float,
    in_handle: int,
    out_handle: int,
    window_seconds: float = DEFAULT_WINDOW_SEC,
) -> list[Segment]:
    """Fixed-length windows (default 10s), handle-adjusted; a trailing window under half a window is merged."""
    min_span = min_span_frames(fps)
    window = max(min_span, int(round(window_seconds * fps)))
    bounds = list(range(window, total_frames, window))
    while bounds and total_frames - bounds[-1] < window // 2:
        bounds.pop()
    return build_segments(
        bounds, total_frames, fps, in_handle, out_handle, origin=SegmentOrigin.fixed_window
    )


def segments_from_change_times(
    times: Iterable[float],
    metadata: VideoMetadata,
    in_handle: int,
    out_handle: int,
    *,
    window_seconds: float = DEFAULT_WINDOW_SEC,
) -> list[Segment]:
    """
    Turn raw change timestamps into the final segment list (filter, frame conversion, handles).

    Always returns at least one segment for a video with at least one frame:
    detected segments, else fixed windows, else one whole-video segment.
    """
    fps = metadata.fps
    total_frames = metadata.total_frames
    if total_frames <= 0:
        raise AnalysisError(
            f"Video has no frames (duration={metadata.duration:.3f}s, fps={fps:.3f})"
        )
    in_handle = max(0, int(in_handle))
    out_handle = max(0, int(out_handle))
    min_span = min_span_frames(fps)

    accepted = filter_change_times(times, metadata.duration)
    cuts = merge_edge_cuts(times_to_frames(accepted, fps), total_frames, min_span)
    segments = build_segments(cuts, total_frames, fps, in_handle, out_handle) if cuts else []
    if segments:
        return segments

    _log.warning(
        "Segmentation degraded: %d change point(s) usable out of %d accepted; "
        "falling back to %.1fs fixed windows",
        len(cuts),
        len(accepted),
        window_seconds,
    )
    segments = fixed_window_segments(total_frames, fps, in_handle, out_handle, window_seconds)
    if segments:
        return segments

    _log.warning(
        "Video too short for a >=1s handle-adjusted segment (%d frames); using the whole video",
        total_frames,
    )
    return [
        Segment(
            index=0,
            start_frame=0,
            end_frame=total_frames,
            fps=fps,
            is_final=True,
            origin=SegmentOrigin.whole_video,
        )
    ]


@dataclass(frozen=True)
class Detection:
    """Everything one analysis pass produced for a video."""

    metadata: VideoMetadata
    raw_times: list[float]
    segments: list[Segment] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.segments) and self.segments[0].origin is not SegmentOrigin.detected


class SegmentDetector:
    """
    Probes a video, streams FFmpeg's scene-change pass, and refines the events into segments.

    Timestamps are parsed from each stderr line as FFmpeg emits it; nothing waits for the
    process to exit before parsing starts.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        window_seconds: float = DEFAULT_WINDOW_SEC,
        hwaccel: str | None = None,
    ) -> None:
        self._runner = runner
        self._window_seconds = window_seconds
        self._hwaccel = hwaccel

    def scene_cmd_args(self, source: Path, sensitivity: float) -> list[str]:
        """FFmpeg arguments (without the executable) for the scene-change pass."""
        args = ["-hide_banner", "-nostats", "-loglevel", "info"]
        if self._hwaccel:
            args += ["-hwaccel", self._hwaccel]
        args += [
            "-i",
            str(source),
            "-filter:v",
            f"select='gt(scene,{sensitivity:g})',showinfo",
            "-an",
            "-f",
            "null",
            "-progress",
            "pipe:2",
            "-",
        ]
        return args

    async def detect_change_times(
        self,
        source: Path,
        sensitivity: float,
        duration: float,
        progress: ProgressChannel | None = None,
    ) -> list[float]:
        """
        Run the scene-change pass and return raw change timestamps in arrival order.

        A non-zero exit or timeout keeps whatever was parsed so far (logged); only a launch
        failure is fatal.
        """
        progress = progress or null_channel()
        sensitivity = min(1.0, max(0.0, float(sensitivity)))
        times: list[float] = []

        def on_line(line: str) -> None:
            pts = parse_pts_time(line)
            if pts is not None:
                times.append(pts)
                _log.debug("Scene change at %.3fs", pts)
                return
            seconds = parse_progress_seconds(line)
            if seconds is not None and duration > 0:
                progress.report(seconds / duration, f"Analyzing scenes ({len(times)} found)")

        timeout = DETECT_TIMEOUT_BASE_SEC + DETECT_TIMEOUT_PER_SEC * duration
        try:
            result = await self._runner.ffmpeg(
                self.scene_cmd_args(source, sensitivity),
                timeout=timeout,
                on_stderr_line=on_line,
            )
        except ProcessLaunchError as e:
            raise AnalysisError(f"Could not launch ffmpeg scene detection: {e}") from e

        if not result.ok:
            _log.warning(
                "Scene detection for %s ended abnormally (exit %d, timed_out=%s) with %d event(s); "
                "continuing. Repro: %s\n%s",
                source,
                result.returncode,
                result.timed_out,
                len(times),
                result.repro,
                result.stderr_tail(),
            )
        progress.report(1.0, f"Scene analysis complete ({len(times)} found)")
        return times

    async def analyze(
        self,
        source: str | Path,
        sensitivity: float,
        in_handle: int,
        out_handle: int,
        progress: ProgressChannel | None = None,
    ) -> Detection:
        """Probe + detect + refine. Raises AnalysisError on probe/launch failure."""
        source = Path(source)
        progress = progress or null_channel()
        progress.report(0.0, "Probing video")
        metadata = await probe_video_metadata(self._runner, source)
        progress.report(_PROBE_DONE, "Detecting scene changes")

        raw_times = await self.detect_change_times(
            source,
            sensitivity,
            metadata.duration,
            progress.child(_PROBE_DONE, _STREAM_DONE),
        )
        segments = segments_from_change_times(
            raw_times,
            metadata,
            in_handle,
            out_handle,
            window_seconds=self._window_seconds,
        )
        _log.info(
            "Detected %d segment(s) in %s from %d raw change event(s)",
            len(segments),
            source,
            len(raw_times),
        )
        progress.report(1.0, f"{len(segments)} segment(s) detected")
        return Detection(metadata=metadata, raw_times=raw_times, segments=segments)

    async def detect(
        self,
        source: str | Path,
        sensitivity: float,
        in_handle: int,
        out_handle: int,
        progress: ProgressChannel | None = None,
    ) -> list[Segment]:
        """Ordered segments for source (see analyze())."""
        detection = await self.analyze(source, sensitivity, in_handle, out_handle, progress)
        return detection.segments
