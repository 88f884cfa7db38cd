"""FFmpeg-based per-segment extraction of still frames and sub-clips with retry and fallback."""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from scenecut.core.io_utils import ensure_dir, file_non_empty, file_size
from scenecut.models.entities import ArtifactKind, ExtractionResult, ExtractionTask, Strategy
from scenecut.models.schema import ExtractionSettings
from scenecut.video.process_runner import ProcessLaunchError, ProcessResult, ProcessRunner

_log = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 0.05

CRF_BEST = 18
CRF_WORST = 28
CRF_MIN = 0
CRF_MAX = 51
JPEG_QSCALE_MIN = 2
JPEG_QSCALE_MAX = 31
QUALITY_MIN = 1
QUALITY_MAX = 10

_CRF_ENCODERS = {"libx264", "libx265"}


class ExtractionTaskError(Exception):
    """A single task failed every attempt (process error, timeout, or unverifiable output)."""

    def __init__(self, message: str, *, attempts: list[ExtractionAttempt] | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []


def _clamp_quality(quality: int) -> int:
    return max(QUALITY_MIN, min(QUALITY_MAX, int(quality)))


def crf_for_quality(quality: int) -> int:
    """
    Map quality 1..10 (10 best) to an x264/x265 CRF: 1 -> 28, 10 -> 18, linear in between.

    Lower CRF means higher visual quality, so the mapping is monotonically non-increasing.
    """
    q = _clamp_quality(quality)
    crf = CRF_WORST - (q - QUALITY_MIN) * (CRF_WORST - CRF_BEST) / (QUALITY_MAX - QUALITY_MIN)
    return max(CRF_MIN, min(CRF_MAX, int(round(crf))))


def jpeg_qscale_for_quality(quality: int) -> int:
    """Map quality 1..10 to FFmpeg's mjpeg -q:v (2 best .. 31 worst): 10 -> 3, 1 -> 30."""
    q = _clamp_quality(quality)
    return max(JPEG_QSCALE_MIN, min(JPEG_QSCALE_MAX, math.ceil((11 - q) * 3)))


def png_compression_for_quality(quality: int) -> int:
    """PNG is lossless; quality only trades file size for speed (compression_level 0..9)."""
    q = _clamp_quality(quality)
    return max(0, min(9, 10 - q))


def extraction_timeout(duration: float, settings: ExtractionSettings) -> float:
    """Seconds allowed for one attempt: base allowance plus a per-second share of the segment."""
    return settings.timeout_base_seconds + settings.timeout_per_second * max(0.0, duration)


class _State(str, Enum):
    primary = "primary"
    fallback = "fallback"
    done = "done"
    failed = "failed"


@dataclass(frozen=True)
class ExtractionAttempt:
    """Diagnostics for one attempt: which strategy, what ran, and why it was rejected."""

    strategy: Strategy
    method: str
    output_path: Path
    process: ProcessResult | None
    verified: bool
    reason: str = ""

    @property
    def repro(self) -> str:
        return self.process.repro if self.process is not None else ""


@dataclass
class ExtractionOutcome:
    """Result plus every attempt made for one task."""

    result: ExtractionResult | None
    attempts: list[ExtractionAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.result is not None


class SegmentExtractor(ABC):
    """
    Extracts one artifact for one ExtractionTask.

    Retry policy is a small state machine: primary -> (ok: done) | fallback -> (ok: done) | failed,
    with a short backoff between the attempts. An attempt only succeeds if FFmpeg exits 0 and the
    output file exists with at least `min_output_bytes`.
    """

    kind: ArtifactKind
    min_output_bytes: int = 1

    def __init__(self, runner: ProcessRunner, *, backoff_seconds: float = RETRY_BACKOFF_SECONDS) -> None:
        self._runner = runner
        self._backoff_seconds = backoff_seconds

    # --- Subclass hooks ---

    @abstractmethod
    def extension(self, settings: ExtractionSettings) -> str: ...

    @abstractmethod
    def build_args(self, task: ExtractionTask, output_path: Path, strategy: Strategy) -> list[str]:
        """FFmpeg arguments (without the executable) for one attempt."""

    @abstractmethod
    def method_name(self, task: ExtractionTask, strategy: Strategy) -> str: ...

    def expected_duration(self, task: ExtractionTask) -> float:
        return task.segment.duration

    # --- Shared logic ---

    def output_filename(self, task: ExtractionTask) -> str:
        """`{videoBaseName}_{kind}_{sequence:03}.{ext}`."""
        ext = self.extension(task.settings)
        return f"{task.source_path.stem}_{self.kind.value}_{task.sequence:03d}.{ext}"

    def output_path(self, task: ExtractionTask) -> Path:
        return task.output_dir / self.output_filename(task)

    def _input_args(self, task: ExtractionTask, seek: float | None) -> list[str]:
        """Global options plus input; seek (if any) is placed before -i for fast input seeking."""
        args = ["-hide_banner", "-nostats", "-loglevel", "error", "-y"]
        if task.settings.hwaccel:
            args += ["-hwaccel", task.settings.hwaccel]
        if seek is not None:
            args += ["-ss", f"{seek:.6f}"]
        args += ["-i", str(task.source_path)]
        return args

    async def _attempt(self, task: ExtractionTask, strategy: Strategy) -> ExtractionAttempt:
        output_path = self.output_path(task)
        method = self.method_name(task, strategy)
        ensure_dir(output_path.parent)
        args = self.build_args(task, output_path, strategy)
        timeout = extraction_timeout(self.expected_duration(task), task.settings)
        try:
            process = await self._runner.ffmpeg(args, timeout=timeout)
        except ProcessLaunchError as e:
            return ExtractionAttempt(strategy, method, output_path, None, False, f"launch failed: {e}")

        if not process.ok:
            output_path.unlink(missing_ok=True)
            reason = f"timed out after {timeout:.0f}s" if process.timed_out else f"exit {process.returncode}"
            return ExtractionAttempt(strategy, method, output_path, process, False, reason)
        if not file_non_empty(output_path, min_bytes=self.min_output_bytes):
            size = file_size(output_path)
            output_path.unlink(missing_ok=True)
            return ExtractionAttempt(
                strategy,
                method,
                output_path,
                process,
                False,
                f"output missing or too small ({size} bytes < {self.min_output_bytes})",
            )
        return ExtractionAttempt(strategy, method, output_path, process, True)

    def _result_for(self, task: ExtractionTask, attempt: ExtractionAttempt) -> ExtractionResult:
        seg = task.segment
        capture_time, output_duration = self.output_timing(task)
        return ExtractionResult(
            output_path=attempt.output_path,
            filename=attempt.output_path.name,
            kind=self.kind,
            sequence=task.sequence,
            segment_index=seg.index,
            start_time=seg.start_time,
            end_time=seg.end_time,
            duration=seg.duration,
            file_size=file_size(attempt.output_path),
            strategy=attempt.strategy,
            method=attempt.method,
            source_video=task.source_path.name,
            capture_time=capture_time,
            output_duration=output_duration,
        )

    def output_timing(self, task: ExtractionTask) -> tuple[float, float]:
        """(capture_time, output_duration) of the artifact; the whole segment by default."""
        seg = task.segment
        return seg.start_time, seg.duration

    async def extract_detailed(self, task: ExtractionTask) -> ExtractionOutcome:
        """Run the primary/fallback state machine and return the result with all attempts."""
        outcome = ExtractionOutcome(result=None)
        state = _State.primary
        while state not in (_State.done, _State.failed):
            strategy = Strategy.primary if state is _State.primary else Strategy.fallback
            attempt = await self._attempt(task, strategy)
            outcome.attempts.append(attempt)
            if attempt.verified:
                outcome.result = self._result_for(task, attempt)
                state = _State.done
            elif state is _State.primary:
                _log.info(
                    "%s: %s attempt failed (%s), retrying with fallback in %.0fms",
                    task.identifier,
                    attempt.method,
                    attempt.reason,
                    self._backoff_seconds * 1000,
                )
                await asyncio.sleep(self._backoff_seconds)
                state = _State.fallback
            else:
                state = _State.failed

        if outcome.result is not None:
            _log.debug(
                "%s: extracted %s (%d bytes, %s)",
                task.identifier,
                outcome.result.filename,
                outcome.result.file_size,
                outcome.result.method,
            )
        else:
            last = outcome.attempts[-1]
            _log.warning(
                "%s: all attempts failed (%s). Repro: %s\n%s",
                task.identifier,
                last.reason,
                last.repro,
                last.process.stderr_tail() if last.process is not None else "",
            )
        return outcome

    async def extract(self, task: ExtractionTask) -> ExtractionResult | None:
        """Extract one artifact; None when both attempts failed."""
        return (await self.extract_detailed(task)).result

    async def run_task(self, task: ExtractionTask) -> ExtractionResult:
        """Like extract(), but raises ExtractionTaskError with diagnostics on failure (pool handler)."""
        outcome = await self.extract_detailed(task)
        if outcome.result is None:
            last = outcome.attempts[-1]
            raise ExtractionTaskError(
                f"{task.identifier}: {last.reason}",
                attempts=outcome.attempts,
            )
        return outcome.result


class FrameExtractor(SegmentExtractor):
    """
    Single representative still per segment, taken at the segment's mid-frame.

    Primary: fast input seek (-ss before -i). Fallback: output seek (-ss after -i), which decodes
    from the start of the file; slower, but survives broken keyframe indexes.
    """

    kind = ArtifactKind.frame
    min_output_bytes = 256

    def extension(self, settings: ExtractionSettings) -> str:
        return settings.image_format

    def output_filename(self, task: ExtractionTask) -> str:
        settings = task.settings
        if settings.analysis_frame_naming and task.video_duration > 0:
            ratio = task.segment.mid_time / task.video_duration
            return f"{task.source_path.stem}_{task.sequence:03d}_{ratio:.4f}.{settings.image_format}"
        return super().output_filename(task)

    def method_name(self, task: ExtractionTask, strategy: Strategy) -> str:
        return "seek-capture" if strategy is Strategy.primary else "decode-capture"

    def expected_duration(self, task: ExtractionTask) -> float:
        # Output seek decodes everything up to the capture point.
        return task.segment.mid_time

    def output_timing(self, task: ExtractionTask) -> tuple[float, float]:
        return task.segment.mid_time, 0.0

    def _quality_args(self, settings: ExtractionSettings) -> list[str]:
        if settings.image_format == "png":
            return ["-compression_level", str(png_compression_for_quality(settings.quality))]
        return ["-q:v", str(jpeg_qscale_for_quality(settings.quality))]

    def build_args(self, task: ExtractionTask, output_path: Path, strategy: Strategy) -> list[str]:
        t = task.segment.mid_time
        if strategy is Strategy.primary:
            args = self._input_args(task, seek=t)
        else:
            args = self._input_args(task, seek=None) + ["-ss", f"{t:.6f}"]
        args += ["-frames:v", "1", "-an"]
        args += self._quality_args(task.settings)
        args.append(str(output_path))
        return args


class ClipExtractor(SegmentExtractor):
    """
    Sub-clip per segment.

    Primary: re-encode (libx264 veryfast + CRF from quality, or bitrate for other encoders such as
    hardware ones). Fallback: stream copy, which snaps to keyframes but rarely fails.
    """

    kind = ArtifactKind.clip
    min_output_bytes = 1024

    def extension(self, settings: ExtractionSettings) -> str:
        return "mp4"

    def clip_duration(self, task: ExtractionTask) -> float:
        duration = task.segment.duration
        cap = task.settings.max_clip_seconds
        if cap is not None and duration > cap:
            return cap
        return duration

    def expected_duration(self, task: ExtractionTask) -> float:
        return self.clip_duration(task)

    def output_timing(self, task: ExtractionTask) -> tuple[float, float]:
        return task.segment.start_time, self.clip_duration(task)

    def method_name(self, task: ExtractionTask, strategy: Strategy) -> str:
        if strategy is Strategy.fallback:
            return "stream-copy"
        return f"reencode-{task.settings.video_codec}"

    def _encode_args(self, settings: ExtractionSettings) -> list[str]:
        codec = settings.video_codec
        args = ["-c:v", codec]
        if codec in _CRF_ENCODERS:
            args += ["-preset", "veryfast", "-crf", str(crf_for_quality(settings.quality))]
        else:
            args += ["-b:v", settings.video_bitrate]
        args += ["-pix_fmt", "yuv420p"]
        if settings.include_audio:
            args += ["-c:a", "aac", "-b:a", "128k"]
        return args

    def build_args(self, task: ExtractionTask, output_path: Path, strategy: Strategy) -> list[str]:
        settings = task.settings
        args = self._input_args(task, seek=task.segment.start_time)
        args += ["-t", f"{self.clip_duration(task):.6f}", "-map", "0:v:0"]
        if settings.include_audio:
            args += ["-map", "0:a:0?"]
        else:
            args.append("-an")
        if strategy is Strategy.primary:
            args += self._encode_args(settings)
        else:
            args += ["-c", "copy", "-avoid_negative_ts", "make_zero"]
        args += ["-movflags", "+faststart", str(output_path)]
        return args


def extractor_for(kind: ArtifactKind, runner: ProcessRunner) -> SegmentExtractor:
    """Extractor instance for an artifact kind."""
    if kind is ArtifactKind.frame:
        return FrameExtractor(runner)
    if kind is ArtifactKind.clip:
        return ClipExtractor(runner)
    raise ValueError(f"unknown artifact kind: {kind!r}")
