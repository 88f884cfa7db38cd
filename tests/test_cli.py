"""Smoke tests for the CLI commands with a fake FFmpeg runner."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from scenecut.cli import app
from tests.conftest import FakeRunner, showinfo_line

pytestmark = [pytest.mark.fast]


@pytest.fixture
def cli_config(tmp_path):
    """Config file pointing output and forensics into tmp_path."""
    path = tmp_path / "scenecut.yml"
    path.write_text(
        f"output_root: {tmp_path / 'out'}\n"
        f"forensics_dir: {tmp_path / 'forensics'}\n"
        "extraction:\n"
        "  max_concurrency: 2\n"
    )
    return path


def _invoke(args, runner):
    with patch("scenecut.cli._runner", return_value=runner):
        return CliRunner().invoke(app, args)


def test_probe_prints_metadata(cli_config, video_file):
    result = _invoke(["--config", str(cli_config), "probe", str(video_file)], FakeRunner())
    assert result.exit_code == 0, result.output
    assert "1920x1080" in result.output
    assert "30.000" in result.output


def test_probe_failure_exits_1(cli_config, video_file):
    result = _invoke(["--config", str(cli_config), "probe", str(video_file)], FakeRunner(launch_error=True))
    assert result.exit_code == 1


def test_detect_json_lists_segments(cli_config, video_file):
    runner = FakeRunner(scene_lines=[showinfo_line(10.0), showinfo_line(45.0), showinfo_line(90.0)])
    result = _invoke(["--config", str(cli_config), "detect", str(video_file), "--json"], runner)
    assert result.exit_code == 0, result.output
    segments = json.loads(result.output)
    assert [(s["start_frame"], s["end_frame"]) for s in segments] == [
        (3, 297),
        (303, 1347),
        (1353, 2697),
        (2703, 3897),
    ]


def test_detect_rejects_invalid_sensitivity(cli_config, video_file):
    result = _invoke(
        ["--config", str(cli_config), "detect", str(video_file), "--sensitivity", "5"], FakeRunner()
    )
    assert result.exit_code == 1


def test_extract_writes_artifacts_and_manifest(cli_config, video_file, tmp_path):
    runner = FakeRunner(scene_lines=[showinfo_line(10.0)])
    result = _invoke(
        ["--config", str(cli_config), "extract", str(video_file), "--kind", "clip", "--manifest", "--json"],
        runner,
    )
    assert result.exit_code == 0, result.output
    reports = json.loads(result.output)
    assert reports[0]["counts"] == {"frame": 0, "clip": 2}
    assert (tmp_path / "out" / "clips" / "holiday" / "holiday_clip_001.mp4").exists()
    assert (tmp_path / "out" / "holiday_manifest.json").exists()


def test_extract_partial_failure_lists_identifiers(cli_config, video_file):
    runner = FakeRunner(
        scene_lines=[showinfo_line(10.0)],
        fail=lambda cmd: cmd[-1].endswith("holiday_frame_002.jpg"),
    )
    result = _invoke(["--config", str(cli_config), "extract", str(video_file), "-k", "frame"], runner)
    assert result.exit_code == 0, result.output
    assert "1/2 succeeded" in result.output
    assert "holiday_frame_002" in result.output


def test_extract_total_failure_dumps_flight_log(cli_config, video_file, tmp_path):
    runner = FakeRunner(scene_lines=[showinfo_line(10.0)], fail=lambda cmd: True)
    result = _invoke(["--config", str(cli_config), "extract", str(video_file), "-k", "frame"], runner)
    assert result.exit_code == 1
    assert list((tmp_path / "forensics").glob("extract_*.log"))


def test_doctor_reports_versions(cli_config):
    result = _invoke(["--config", str(cli_config), "doctor"], FakeRunner())
    assert result.exit_code == 0, result.output
    assert "6.1-test" in result.output


def test_doctor_missing_ffmpeg_exits_1(cli_config):
    result = _invoke(["--config", str(cli_config), "doctor"], FakeRunner(launch_error=True))
    assert result.exit_code == 1


def test_missing_config_file_exits_1(tmp_path):
    result = CliRunner().invoke(app, ["--config", str(tmp_path / "nope.yml"), "doctor"])
    assert result.exit_code == 1
