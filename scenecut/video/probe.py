"""ffprobe metadata probe (VideoMetadata) and transcoder availability check."""

import json
import logging
import re
from fractions import Fraction
from pathlib import Path
from typing import Any

from scenecut.models.entities import VideoMetadata
from scenecut.video.process_runner import ProcessLaunchError, ProcessRunner

_log = logging.getLogger(__name__)

_VERSION_REGEX = re.compile(r"(?:ffmpeg|ffprobe) version (\S+)")


class AnalysisError(Exception):
    """Metadata probe or change-detection pass could not run or returned unparsable data."""


def parse_frame_rate(value: Any) -> float | None:
    """
    Parse an ffprobe rational ("30000/1001", "25/1") or plain number into fps.

    Returns None for missing, zero ("0/0") or malformed values.
    """
    if value is None:
        return None
    try:
        if isinstance(value, str) and "/" in value:
            num, den = value.split("/", 1)
            if int(den) == 0:
                return None
            fps = float(Fraction(int(num), int(den)))
        else:
            fps = float(value)
    except (ValueError, ZeroDivisionError):
        return None
    if fps <= 0:
        return None
    return fps


def _positive_float(value: Any) -> float | None:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if f > 0 else None


def _optional_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_probe_json(payload: str | bytes, source: Path | str = "") -> VideoMetadata:
    """
    Build VideoMetadata from `ffprobe -print_format json -show_format -show_streams` output.

    Raises AnalysisError when there is no video stream or duration/fps cannot be parsed:
    without fps no segment can be frame-accurate.
    """
    try:
        info = json.loads(payload or b"{}")
    except json.JSONDecodeError as e:
        raise AnalysisError(f"ffprobe returned invalid JSON for {source}: {e}") from e
    if not isinstance(info, dict):
        raise AnalysisError(f"ffprobe returned unexpected output for {source}")

    streams = info.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise AnalysisError(f"No video stream found in {source}")

    fmt = info.get("format") or {}
    duration = _positive_float(fmt.get("duration")) or _positive_float(video.get("duration"))
    if duration is None:
        raise AnalysisError(f"Could not determine duration of {source}")

    fps = parse_frame_rate(video.get("avg_frame_rate")) or parse_frame_rate(video.get("r_frame_rate"))
    if fps is None:
        raise AnalysisError(f"Could not determine frame rate of {source}")

    return VideoMetadata(
        duration=duration,
        width=_optional_int(video.get("width")) or 0,
        height=_optional_int(video.get("height")) or 0,
        fps=fps,
        codec=video.get("codec_name"),
        bitrate=_optional_int(fmt.get("bit_rate")),
    )


async def probe_video_metadata(runner: ProcessRunner, source: Path) -> VideoMetadata:
    """Run ffprobe on source and return its VideoMetadata. Raises AnalysisError on any failure."""
    args = [
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(source),
    ]
    try:
        result = await runner.ffprobe(args)
    except ProcessLaunchError as e:
        raise AnalysisError(f"Could not launch ffprobe: {e}") from e
    if not result.ok:
        reason = "timed out" if result.timed_out else f"exit {result.returncode}"
        raise AnalysisError(
            f"ffprobe failed for {source} ({reason}). Repro: {result.repro}\n{result.stderr_tail()}"
        )
    metadata = parse_probe_json(result.stdout, source)
    _log.info(
        "Probed %s: %.2fs, %dx%d, %.3f fps, %d frames, codec=%s",
        source,
        metadata.duration,
        metadata.width,
        metadata.height,
        metadata.fps,
        metadata.total_frames,
        metadata.codec,
    )
    return metadata


async def tool_version(runner: ProcessRunner, executable: str) -> str | None:
    """
    Return the version string printed by `executable -version` (ffmpeg or ffprobe).

    Returns None if the executable is missing, fails, or prints no recognizable version line.
    """
    try:
        result = await runner.run([executable, "-version"], timeout=15.0, capture_stdout=True)
    except ProcessLaunchError as e:
        _log.warning("%s is not available: %s", executable, e)
        return None
    if not result.ok:
        return None
    for line in result.stdout.decode("utf-8", errors="replace").splitlines():
        m = _VERSION_REGEX.search(line)
        if m:
            return m.group(1)
    return None
