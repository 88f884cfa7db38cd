"""Tests for frame/clip extractors: argument lists, retry/fallback state machine, output verification."""

import pytest

from scenecut.models.entities import ArtifactKind, Strategy
from scenecut.models.schema import ExtractionSettings
from scenecut.video.extractors import (
    ClipExtractor,
    ExtractionTaskError,
    FrameExtractor,
    crf_for_quality,
    extraction_timeout,
    extractor_for,
    jpeg_qscale_for_quality,
    png_compression_for_quality,
)
from tests.conftest import FakeRunner, make_task

pytestmark = [pytest.mark.fast]


def _arg(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


# --- quality mappings ---


def test_crf_mapping_endpoints_and_monotonic():
    """Higher quality never yields a higher (worse) CRF."""
    assert crf_for_quality(1) == 28
    assert crf_for_quality(10) == 18
    values = [crf_for_quality(q) for q in range(1, 11)]
    assert values == sorted(values, reverse=True)


def test_jpeg_qscale_mapping_monotonic_and_in_range():
    values = [jpeg_qscale_for_quality(q) for q in range(1, 11)]
    assert values == sorted(values, reverse=True)
    assert all(2 <= v <= 31 for v in values)
    assert jpeg_qscale_for_quality(10) == 3
    assert jpeg_qscale_for_quality(1) == 30


def test_png_compression_mapping_in_range():
    values = [png_compression_for_quality(q) for q in range(1, 11)]
    assert values == sorted(values, reverse=True)
    assert all(0 <= v <= 9 for v in values)


def test_quality_out_of_range_is_clamped():
    assert crf_for_quality(0) == crf_for_quality(1)
    assert crf_for_quality(99) == crf_for_quality(10)


def test_timeout_grows_with_duration():
    settings = ExtractionSettings()
    assert extraction_timeout(30.0, settings) > extraction_timeout(2.0, settings)
    assert extraction_timeout(0.0, settings) == settings.timeout_base_seconds


# --- filenames and arguments ---


def test_output_filename_pattern(tmp_path):
    """{stem}_{kind}_{sequence:03d}.{ext}"""
    runner = FakeRunner()
    clip_task = make_task(tmp_path, kind=ArtifactKind.clip, index=6)
    frame_task = make_task(tmp_path, kind=ArtifactKind.frame, index=0)
    assert ClipExtractor(runner).output_filename(clip_task) == "holiday_clip_007.mp4"
    assert FrameExtractor(runner).output_filename(frame_task) == "holiday_frame_001.jpg"


def test_frame_analysis_naming_uses_time_ratio(tmp_path):
    settings = ExtractionSettings(analysis_frame_naming=True, image_format="png")
    task = make_task(tmp_path, kind=ArtifactKind.frame, start_frame=0, end_frame=600, settings=settings,
                     video_duration=100.0)
    # mid-frame 300 at 30fps = 10s of 100s
    assert FrameExtractor(FakeRunner()).output_filename(task) == "holiday_001_0.1000.png"


def test_frame_primary_args_seek_before_input(tmp_path):
    task = make_task(tmp_path, kind=ArtifactKind.frame, start_frame=300, end_frame=600)
    ext = FrameExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.primary)
    assert args.index("-ss") < args.index("-i")
    assert float(_arg(args, "-ss")) == pytest.approx(15.0)
    assert _arg(args, "-frames:v") == "1"
    assert _arg(args, "-q:v") == str(jpeg_qscale_for_quality(8))
    assert "-y" in args
    assert args[-1].endswith("holiday_frame_001.jpg")


def test_frame_fallback_args_seek_after_input(tmp_path):
    task = make_task(tmp_path, kind=ArtifactKind.frame)
    ext = FrameExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.fallback)
    assert args.index("-ss") > args.index("-i")


def test_frame_png_uses_compression_level(tmp_path):
    task = make_task(tmp_path, kind=ArtifactKind.frame, settings=ExtractionSettings(image_format="png", quality=10))
    ext = FrameExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.primary)
    assert _arg(args, "-compression_level") == "0"
    assert "-q:v" not in args


def test_clip_primary_reencodes_with_crf(tmp_path):
    task = make_task(tmp_path, kind=ArtifactKind.clip, start_frame=303, end_frame=897)
    ext = ClipExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.primary)
    assert float(_arg(args, "-ss")) == pytest.approx(10.1)
    assert float(_arg(args, "-t")) == pytest.approx(19.8)
    assert _arg(args, "-c:v") == "libx264"
    assert _arg(args, "-crf") == str(crf_for_quality(8))
    assert _arg(args, "-c:a") == "aac"
    assert "0:a:0?" in args
    assert _arg(args, "-movflags") == "+faststart"


def test_clip_duration_is_capped(tmp_path):
    """Clips longer than max_clip_seconds are cut at the cap."""
    task = make_task(tmp_path, start_frame=0, end_frame=60 * 30)
    ext = ClipExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.primary)
    assert float(_arg(args, "-t")) == pytest.approx(30.0)
    assert ext.output_timing(task) == (0.0, 30.0)


def test_clip_hardware_encoder_uses_bitrate(tmp_path):
    settings = ExtractionSettings(video_codec="h264_videotoolbox", video_bitrate="6M", hwaccel="videotoolbox")
    task = make_task(tmp_path, settings=settings)
    ext = ClipExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.primary)
    assert _arg(args, "-b:v") == "6M"
    assert "-crf" not in args
    assert args.index("-hwaccel") < args.index("-i")
    assert ext.method_name(task, Strategy.primary) == "reencode-h264_videotoolbox"


def test_clip_without_audio(tmp_path):
    task = make_task(tmp_path, settings=ExtractionSettings(include_audio=False))
    ext = ClipExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.primary)
    assert "-an" in args
    assert "-c:a" not in args


def test_clip_fallback_is_stream_copy(tmp_path):
    task = make_task(tmp_path)
    ext = ClipExtractor(FakeRunner())
    args = ext.build_args(task, ext.output_path(task), Strategy.fallback)
    assert _arg(args, "-c") == "copy"
    assert "-crf" not in args
    assert ext.method_name(task, Strategy.fallback) == "stream-copy"


# --- retry state machine ---


@pytest.mark.asyncio
async def test_primary_success_uses_one_attempt(tmp_path):
    runner = FakeRunner()
    task = make_task(tmp_path)
    result = await ClipExtractor(runner, backoff_seconds=0).extract(task)
    assert result is not None
    assert result.strategy is Strategy.primary
    assert result.method == "reencode-libx264"
    assert result.file_size == 4096
    assert result.output_path.exists()
    assert result.output_path.parent == tmp_path / "out" / "clip"
    assert len(runner.extraction_calls()) == 1


@pytest.mark.asyncio
async def test_primary_failure_falls_back_and_is_tagged(tmp_path):
    """When re-encode fails but stream copy works, the result is tagged as fallback."""
    runner = FakeRunner(fail=lambda cmd: "libx264" in cmd)
    task = make_task(tmp_path)
    outcome = await ClipExtractor(runner, backoff_seconds=0).extract_detailed(task)
    assert outcome.ok
    assert outcome.result.strategy is Strategy.fallback
    assert outcome.result.used_fallback
    assert outcome.result.method == "stream-copy"
    assert [a.verified for a in outcome.attempts] == [False, True]
    assert outcome.attempts[0].reason == "exit 1"
    assert "ffmpeg" in outcome.attempts[0].repro


@pytest.mark.asyncio
async def test_both_attempts_fail_returns_none(tmp_path):
    runner = FakeRunner(fail=lambda cmd: True)
    task = make_task(tmp_path, kind=ArtifactKind.frame)
    assert await FrameExtractor(runner, backoff_seconds=0).extract(task) is None
    assert len(runner.extraction_calls()) == 2


@pytest.mark.asyncio
async def test_run_task_raises_with_attempts(tmp_path):
    runner = FakeRunner(fail=lambda cmd: True)
    task = make_task(tmp_path)
    with pytest.raises(ExtractionTaskError, match="holiday_clip_001") as exc_info:
        await ClipExtractor(runner, backoff_seconds=0).run_task(task)
    assert len(exc_info.value.attempts) == 2


@pytest.mark.asyncio
async def test_zero_byte_output_is_failure_and_removed(tmp_path):
    """Exit 0 with an empty output file does not count as success."""
    runner = FakeRunner(output_bytes=0)
    task = make_task(tmp_path, kind=ArtifactKind.frame)
    ext = FrameExtractor(runner, backoff_seconds=0)
    outcome = await ext.extract_detailed(task)
    assert outcome.result is None
    assert "too small" in outcome.attempts[-1].reason
    assert not ext.output_path(task).exists()


@pytest.mark.asyncio
async def test_launch_error_counts_as_failed_attempt(tmp_path):
    task = make_task(tmp_path)
    outcome = await ClipExtractor(FakeRunner(launch_error=True), backoff_seconds=0).extract_detailed(task)
    assert outcome.result is None
    assert all(a.process is None for a in outcome.attempts)
    assert "launch failed" in outcome.attempts[0].reason


@pytest.mark.asyncio
async def test_frame_result_keeps_segment_timing_and_capture_point(tmp_path):
    """Frame results report the segment span plus the timestamp the still was taken at."""
    task = make_task(tmp_path, kind=ArtifactKind.frame, start_frame=300, end_frame=600)
    result = await FrameExtractor(FakeRunner(), backoff_seconds=0).extract(task)
    assert (result.start_time, result.end_time, result.duration) == pytest.approx((10.0, 20.0, 10.0))
    assert result.capture_time == pytest.approx(15.0)
    assert result.output_duration == 0.0
    assert result.to_dict()["kind"] == "frame"


def test_extractor_for_kind():
    runner = FakeRunner()
    assert isinstance(extractor_for(ArtifactKind.frame, runner), FrameExtractor)
    assert isinstance(extractor_for(ArtifactKind.clip, runner), ClipExtractor)
