"""Typer CLI: probe, detect and extract scene-cut segments; check the FFmpeg install."""

import asyncio
import contextlib
import json
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from scenecut.core.config import Settings, get_config
from scenecut.core.logging import get_flight_logger, setup_logging
from scenecut.core.progress import ProgressChannel
from scenecut.models.schema import ExtractionSettings
from scenecut.video.probe import AnalysisError, probe_video_metadata, tool_version
from scenecut.video.process_runner import ProcessRunner
from scenecut.video.segment_detector import SegmentDetector
from scenecut.workers.importer import ManifestImporter
from scenecut.workers.session import BatchReport, ExtractionSession

T = TypeVar("T")

app = typer.Typer(no_args_is_help=True, help="Scene-cut detection and parallel frame/clip extraction.")

console = Console()
err_console = Console(stderr=True)


@app.callback()
def main_callback(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to a scenecut.yml config file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging to stderr."),
) -> None:
    """Load config and set up logging for every command."""
    try:
        cfg = get_config(config) if config is not None else get_config()
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Config error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    setup_logging("DEBUG" if verbose else cfg.log_level, cfg.forensics_dir)


def _runner(cfg: Settings) -> ProcessRunner:
    return ProcessRunner(cfg.ffmpeg_path, cfg.ffprobe_path)


def _settings(cfg: Settings, **overrides: Any) -> ExtractionSettings:
    """Config extraction defaults with CLI overrides applied (None means not given)."""
    data = cfg.extraction.model_dump()
    data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return ExtractionSettings.model_validate(data)
    except ValidationError as e:
        typer.secho(f"Invalid settings: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _run_cancellable(factory: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run a coroutine; the first Ctrl-C sets the cancel event so partial results are kept."""

    async def _main() -> T:
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        try:
            return await factory(cancel_event)
        finally:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(_main())


def _dump_flight_log(label: str) -> None:
    fl = get_flight_logger()
    if fl is None:
        return
    path = fl.dump(label)
    typer.echo(f"Flight log written to {path}", err=True)


@app.command("probe")
def probe(
    video: Path = typer.Argument(..., help="Video file to probe"),
) -> None:
    """Print duration, resolution, frame rate and codec for a video."""
    runner = _runner(get_config())
    try:
        meta = asyncio.run(probe_video_metadata(runner, video))
    except AnalysisError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    table = Table(title=video.name)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Duration", f"{meta.duration:.3f}s")
    table.add_row("Resolution", f"{meta.width}x{meta.height}")
    table.add_row("FPS", f"{meta.fps:.3f}")
    table.add_row("Frames", str(meta.total_frames))
    table.add_row("Codec", meta.codec or "")
    table.add_row("Bitrate", str(meta.bitrate) if meta.bitrate else "")
    console.print(table)


@app.command("detect")
def detect(
    video: Path = typer.Argument(..., help="Video file to analyse"),
    sensitivity: float | None = typer.Option(None, "--sensitivity", "-s", help="Scene threshold 0.1-1.0 (lower = more cuts)"),
    in_handle: int | None = typer.Option(None, "--in-handle", help="Frames trimmed after each cut"),
    out_handle: int | None = typer.Option(None, "--out-handle", help="Frames trimmed before each cut"),
    as_json: bool = typer.Option(False, "--json", help="Print segments as JSON"),
) -> None:
    """Detect scene cuts and print the resulting frame-accurate segments."""
    cfg = get_config()
    settings = _settings(cfg, sensitivity=sensitivity, in_handle=in_handle, out_handle=out_handle)
    detector = SegmentDetector(_runner(cfg), window_seconds=settings.window_seconds, hwaccel=settings.hwaccel)
    try:
        detection = asyncio.run(
            detector.analyze(video, settings.sensitivity, settings.in_handle, settings.out_handle)
        )
    except AnalysisError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps([s.to_dict() for s in detection.segments], indent=2))
        return
    table = Table(title=f"{video.name}: {len(detection.segments)} segment(s)")
    table.add_column("#", justify="right")
    table.add_column("Frames")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Duration", justify="right")
    for seg in detection.segments:
        table.add_row(
            str(seg.sequence),
            f"{seg.start_frame}-{seg.end_frame}",
            f"{seg.start_time:.3f}",
            f"{seg.end_time:.3f}",
            f"{seg.duration:.3f}",
        )
    console.print(table)
    if detection.degraded:
        typer.secho(
            f"No usable scene changes; segments are {detection.segments[0].origin.value.replace('_', ' ')}.",
            fg=typer.colors.YELLOW,
        )


def _print_batch(batch: BatchReport) -> None:
    table = Table(title=None)
    table.add_column("Video")
    table.add_column("Segments", justify="right")
    table.add_column("Frames", justify="right")
    table.add_column("Clips", justify="right")
    table.add_column("Result")
    for item in batch.items:
        if item.report is None:
            table.add_row(item.source.name, "", "", "", f"[red]{item.error}[/red]")
            continue
        r = item.report
        table.add_row(
            item.source.name,
            str(len(r.segments)),
            str(len(r.frames)),
            str(len(r.clips)),
            r.summary(),
        )
    console.print(table)
    for item in batch.items:
        if item.report is not None and item.report.failures:
            typer.secho(
                f"{item.source.name}: failed {', '.join(item.report.failed_identifiers)}",
                fg=typer.colors.YELLOW,
            )
        if item.report is not None and item.report.import_error:
            typer.secho(f"{item.source.name}: import failed: {item.report.import_error}", fg=typer.colors.YELLOW)


@app.command("extract")
def extract(
    videos: list[Path] = typer.Argument(..., help="One or more video files"),
    kind: list[str] | None = typer.Option(None, "--kind", "-k", help="Artifact kind: frame or clip (repeatable)"),
    quality: int | None = typer.Option(None, "--quality", "-q", help="Quality 1 (smallest) .. 10 (best)"),
    image_format: str | None = typer.Option(None, "--format", help="Frame image format: jpg or png"),
    max_concurrency: int | None = typer.Option(None, "--max-concurrency", "-j", help="Upper bound on parallel FFmpeg processes"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output root directory"),
    manifest: bool = typer.Option(False, "--manifest", help="Write a JSON manifest per video"),
    sensitivity: float | None = typer.Option(None, "--sensitivity", "-s", help="Scene threshold 0.1-1.0 (lower = more cuts)"),
    in_handle: int | None = typer.Option(None, "--in-handle", help="Frames trimmed after each cut"),
    out_handle: int | None = typer.Option(None, "--out-handle", help="Frames trimmed before each cut"),
    as_json: bool = typer.Option(False, "--json", help="Print session reports as JSON"),
) -> None:
    """Detect segments and extract frames and/or clips in parallel. Ctrl-C keeps partial results."""
    cfg = get_config()
    settings = _settings(
        cfg,
        kinds=kind or None,
        quality=quality,
        image_format=image_format,
        max_concurrency=max_concurrency,
        sensitivity=sensitivity,
        in_handle=in_handle,
        out_handle=out_handle,
    )
    output_root = output if output is not None else Path(cfg.output_root)
    session = ExtractionSession(
        _runner(cfg),
        settings,
        output_root=output_root,
        importer=ManifestImporter(output_root) if manifest else None,
    )

    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=err_console,
        disable=as_json,
    ) as bar:
        task_id = bar.add_task("Starting", total=1.0)

        def sink(fraction: float, message: str) -> None:
            bar.update(task_id, completed=fraction, description=message or "Working")

        batch = _run_cancellable(
            lambda cancel_event: session.run_batch(videos, ProgressChannel(sink), cancel_event)
        )

    if as_json:
        payload = [
            item.report.to_dict() if item.report is not None else {"source": str(item.source), "error": item.error}
            for item in batch.items
        ]
        typer.echo(json.dumps(payload, indent=2))
    else:
        _print_batch(batch)
        if batch.cancelled:
            typer.secho("Cancelled; partial results kept.", fg=typer.colors.YELLOW)

    if batch.failed:
        _dump_flight_log("extract")
        raise typer.Exit(1)


@app.command("doctor")
def doctor() -> None:
    """Check that ffmpeg and ffprobe are installed and runnable."""
    cfg = get_config()
    runner = _runner(cfg)

    async def _versions() -> tuple[str | None, str | None]:
        return (
            await tool_version(runner, cfg.ffmpeg_path),
            await tool_version(runner, cfg.ffprobe_path),
        )

    ffmpeg_v, ffprobe_v = asyncio.run(_versions())
    table = Table(title=None)
    table.add_column("Tool")
    table.add_column("Path")
    table.add_column("Version")
    for name, path, version in (("ffmpeg", cfg.ffmpeg_path, ffmpeg_v), ("ffprobe", cfg.ffprobe_path, ffprobe_v)):
        table.add_row(name, path, version or "[red]not found[/red]")
    console.print(table)
    if ffmpeg_v is None or ffprobe_v is None:
        typer.secho("FFmpeg is not usable. Install it or set FFMPEG_PATH / FFPROBE_PATH.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.secho("FFmpeg OK.", fg=typer.colors.GREEN)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
