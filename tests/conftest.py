"""Pytest fixtures. FakeRunner stands in for FFmpeg so scheduling and failure paths are deterministic."""

import asyncio
import json
from pathlib import Path
from typing import Callable, Sequence

import pytest

from scenecut.core import config as config_module
from scenecut.models.entities import ArtifactKind, ExtractionTask, Segment
from scenecut.models.schema import ExtractionSettings
from scenecut.video.process_runner import ProcessLaunchError, ProcessResult, ProcessRunner


def probe_payload(
    duration: float = 130.0,
    fps: str = "30/1",
    width: int = 1920,
    height: int = 1080,
    codec: str = "h264",
) -> dict:
    """Minimal `ffprobe -show_format -show_streams` JSON for a single video stream plus audio."""
    return {
        "streams": [
            {"codec_type": "audio", "codec_name": "aac"},
            {
                "codec_type": "video",
                "codec_name": codec,
                "width": width,
                "height": height,
                "avg_frame_rate": fps,
                "r_frame_rate": fps,
            },
        ],
        "format": {"duration": f"{duration:.6f}", "bit_rate": "8000000"},
    }


def showinfo_line(pts_time: float, n: int = 0) -> str:
    """One stderr line as printed by FFmpeg's showinfo filter for a selected frame."""
    return (
        f"[Parsed_showinfo_1 @ 0x55d0c8a4f2c0] n:{n:4d} pts:{int(pts_time * 90000):8d} "
        f"pts_time:{pts_time:<10g} duration:3003 fmt:yuv420p sar:1/1 s:1920x1080 i:P iskey:0 type:P"
    )


class FakeRunner(ProcessRunner):
    """
    Records every command instead of launching it.

    - ffprobe returns `probe` as JSON.
    - the scene pass feeds `scene_lines` to the stderr callback one by one, then sleeps
      `scene_delay` seconds.
    - extraction commands write `output_bytes` to the output path (last argument) unless
      `fail(cmd)` returns True, in which case they exit 1 without writing anything.
    """

    def __init__(
        self,
        *,
        probe: dict | None = None,
        scene_lines: Sequence[str] = (),
        scene_returncode: int = 0,
        fail: Callable[[list[str]], bool] | None = None,
        output_bytes: int = 4096,
        delay: float | Callable[[list[str]], float] = 0.0,
        launch_error: bool = False,
        scene_delay: float = 0.0,
    ) -> None:
        super().__init__("ffmpeg", "ffprobe")
        self.probe = probe if probe is not None else probe_payload()
        self.scene_lines = list(scene_lines)
        self.scene_returncode = scene_returncode
        self.fail = fail or (lambda cmd: False)
        self.output_bytes = output_bytes
        self.delay = delay
        self.launch_error = launch_error
        self.scene_delay = scene_delay
        self.calls: list[list[str]] = []
        self.active = 0
        self.peak = 0
        self.killed = 0

    def extraction_calls(self) -> list[list[str]]:
        return [c for c in self.calls if c[0] == self.ffmpeg_path and not _is_scene_pass(c)]

    async def run(self, cmd, *, timeout=None, on_stderr_line=None, capture_stdout=False):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        if self.launch_error:
            raise ProcessLaunchError(2, f"Failed to start {cmd[0]}: No such file or directory")
        if "-version" in cmd:
            return ProcessResult(cmd, 0, "", stdout=f"{Path(cmd[0]).name} version 6.1-test Copyright".encode())
        if cmd[0] == self.ffprobe_path:
            return ProcessResult(cmd, 0, "", stdout=json.dumps(self.probe).encode())
        if _is_scene_pass(cmd):
            try:
                for line in self.scene_lines:
                    if on_stderr_line is not None:
                        on_stderr_line(line)
                    await asyncio.sleep(0)
                await asyncio.sleep(self.scene_delay)
            except asyncio.CancelledError:
                self.killed += 1
                raise
            return ProcessResult(cmd, self.scene_returncode, "\n".join(self.scene_lines))

        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            delay = self.delay(cmd) if callable(self.delay) else self.delay
            await asyncio.sleep(delay)
            if self.fail(cmd):
                return ProcessResult(cmd, 1, "Error while processing: poisoned input")
            out = Path(cmd[-1])
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(b"\0" * self.output_bytes)
            return ProcessResult(cmd, 0, "")
        except asyncio.CancelledError:
            self.killed += 1
            raise
        finally:
            self.active -= 1


def _is_scene_pass(cmd: Sequence[str]) -> bool:
    return any("showinfo" in c for c in cmd)


def make_task(
    tmp_path: Path,
    *,
    kind: ArtifactKind = ArtifactKind.clip,
    index: int = 0,
    start_frame: int = 3,
    end_frame: int = 297,
    fps: float = 30.0,
    settings: ExtractionSettings | None = None,
    source_name: str = "holiday.mp4",
    video_duration: float = 130.0,
) -> ExtractionTask:
    """ExtractionTask for one segment of a dummy source under tmp_path."""
    segment = Segment(index=index, start_frame=start_frame, end_frame=end_frame, fps=fps)
    source = tmp_path / source_name
    return ExtractionTask(
        source_path=source,
        segment=segment,
        kind=kind,
        sequence=segment.sequence,
        original_index=index,
        output_dir=tmp_path / "out" / kind.value,
        settings=settings or ExtractionSettings(),
        video_duration=video_duration,
    )


@pytest.fixture
def video_file(tmp_path) -> Path:
    """Placeholder source video (FakeRunner never reads it)."""
    p = tmp_path / "holiday.mp4"
    p.write_bytes(b"\0" * 1024)
    return p


@pytest.fixture(autouse=True)
def _reset_config_cache():
    config_module.reset_config()
    yield
    config_module.reset_config()
