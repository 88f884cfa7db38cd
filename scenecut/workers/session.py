"""ExtractionSession: detect segments, fan out extraction tasks through the pool, aggregate results."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

from scenecut.core.progress import ProgressChannel, null_channel
from scenecut.models.entities import (
    ArtifactKind,
    ExtractionResult,
    ExtractionTask,
    Segment,
    TaskFailure,
    VideoMetadata,
)
from scenecut.models.schema import ExtractionSettings
from scenecut.video.extractors import SegmentExtractor, extractor_for
from scenecut.video.probe import AnalysisError
from scenecut.video.process_runner import ProcessRunner
from scenecut.video.segment_detector import Detection, SegmentDetector
from scenecut.workers.importer import ArtifactImporter, NoopImporter
from scenecut.workers.pool import WorkerPool

_log = logging.getLogger(__name__)

# Session-level progress ranges.
_DETECT_END = 0.3
_EXTRACT_END = 0.9

_OUTPUT_SUBDIRS = {ArtifactKind.frame: "frames", ArtifactKind.clip: "clips"}


class SessionError(Exception):
    """Total failure: no segments, or no artifact could be extracted."""

    def __init__(self, message: str, *, report: SessionReport | None = None) -> None:
        super().__init__(message)
        self.report = report


def _clip_tier(cpu: int) -> int:
    if cpu >= 12:
        return min(max(8, math.floor(cpu * 0.85)), 12)
    if cpu >= 8:
        return min(max(6, math.floor(cpu * 0.75)), 8)
    return min(max(3, math.floor(cpu * 0.6)), 4)


def _frame_tier(cpu: int) -> int:
    if cpu >= 12:
        return min(max(6, math.floor(cpu * 0.9)), 16)
    if cpu >= 8:
        return min(max(4, math.floor(cpu * 0.8)), 10)
    return min(max(2, math.floor(cpu * 0.6)), 6)


def compute_concurrency(
    kinds: Iterable[ArtifactKind],
    task_count: int,
    cpu_count: int | None = None,
    ceiling: int | None = None,
) -> int:
    """
    Concurrency bound for one session.

    Scales the CPU count into a per-kind tier (clip re-encodes are heavier, so their tier is lower;
    when clips are requested the clip tier applies to the whole pool), then caps by the caller's
    ceiling and the number of tasks. Always >= 1.
    """
    cpu = max(1, cpu_count or os.cpu_count() or 1)
    kinds = set(kinds)
    limit = _clip_tier(cpu) if ArtifactKind.clip in kinds else _frame_tier(cpu)
    if ceiling is not None:
        limit = min(limit, ceiling)
    if task_count > 0:
        limit = min(limit, task_count)
    return max(1, limit)


@dataclass
class SessionReport:
    """Everything one video's session produced; artifacts are in segment/kind order."""

    source: Path
    metadata: VideoMetadata | None
    segments: list[Segment]
    artifacts: list[ExtractionResult]
    failures: list[TaskFailure]
    total_tasks: int
    elapsed: float
    concurrency: int
    cancelled: bool = False
    skipped: int = 0
    degraded: bool = False
    manifest_path: Path | None = None
    import_error: str | None = None

    @property
    def frames(self) -> list[ExtractionResult]:
        return [a for a in self.artifacts if a.kind is ArtifactKind.frame]

    @property
    def clips(self) -> list[ExtractionResult]:
        return [a for a in self.artifacts if a.kind is ArtifactKind.clip]

    @property
    def counts(self) -> dict[str, int]:
        return {"frame": len(self.frames), "clip": len(self.clips)}

    @property
    def total_bytes(self) -> int:
        return sum(a.file_size for a in self.artifacts)

    @property
    def success_ratio(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return len(self.artifacts) / self.total_tasks

    @property
    def failed_identifiers(self) -> list[str]:
        return [f.identifier for f in self.failures]

    def summary(self) -> str:
        text = f"{len(self.artifacts)}/{self.total_tasks} succeeded"
        if self.cancelled:
            text += f" (cancelled, {self.skipped} not run)"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": str(self.source),
            "segments": [s.to_dict() for s in self.segments],
            "artifacts": [a.to_dict() for a in self.artifacts],
            "failed": self.failed_identifiers,
            "counts": self.counts,
            "total_tasks": self.total_tasks,
            "total_bytes": self.total_bytes,
            "success_ratio": round(self.success_ratio, 4),
            "elapsed": round(self.elapsed, 3),
            "concurrency": self.concurrency,
            "cancelled": self.cancelled,
            "degraded": self.degraded,
            "manifest_path": str(self.manifest_path) if self.manifest_path else None,
            "import_error": self.import_error,
        }


@dataclass
class BatchItem:
    source: Path
    report: SessionReport | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.report is not None


@dataclass
class BatchReport:
    items: list[BatchItem] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> list[BatchItem]:
        return [i for i in self.items if i.ok]

    @property
    def failed(self) -> list[BatchItem]:
        return [i for i in self.items if not i.ok]


class ExtractionSession:
    """
    Orchestrates one extraction run per video.

    Each run owns a fresh SegmentDetector and WorkerPool; the only long-lived collaborators are
    the process runner, the settings snapshot, and the injected importer.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        settings: ExtractionSettings | None = None,
        *,
        output_root: Path | str,
        importer: ArtifactImporter | None = None,
        cpu_count: int | None = None,
    ) -> None:
        self._runner = runner
        self._settings = settings or ExtractionSettings()
        self._output_root = Path(output_root)
        self._importer: ArtifactImporter = importer or NoopImporter()
        self._cpu_count = cpu_count
        self._extractors: dict[ArtifactKind, SegmentExtractor] = {
            kind: extractor_for(kind, runner) for kind in ArtifactKind
        }

    @property
    def settings(self) -> ExtractionSettings:
        return self._settings

    def output_dir(self, source: Path, kind: ArtifactKind) -> Path:
        return self._output_root / _OUTPUT_SUBDIRS[kind] / source.stem

    def build_tasks(self, source: Path, segments: Sequence[Segment], video_duration: float) -> list[ExtractionTask]:
        """One task per segment per requested kind: all frames first, then all clips."""
        tasks: list[ExtractionTask] = []
        for kind in (ArtifactKind.frame, ArtifactKind.clip):
            if not self._settings.wants(kind):
                continue
            out_dir = self.output_dir(source, kind)
            for seg in segments:
                tasks.append(
                    ExtractionTask(
                        source_path=source,
                        segment=seg,
                        kind=kind,
                        sequence=seg.sequence,
                        original_index=len(tasks),
                        output_dir=out_dir,
                        settings=self._settings,
                        video_duration=video_duration,
                    )
                )
        return tasks

    async def _analyze(
        self,
        detector: SegmentDetector,
        source: Path,
        progress: ProgressChannel,
        cancel_event: asyncio.Event | None,
    ) -> Detection | None:
        """Run detection, racing it against cancel_event. Returns None when cancelled first."""
        s = self._settings
        job = asyncio.ensure_future(
            detector.analyze(source, s.sensitivity, s.in_handle, s.out_handle, progress)
        )
        if cancel_event is None:
            return await job
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({job, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not job.done():
                # Cancelling the job kills the scene-detection process.
                job.cancel()
                await asyncio.gather(job, return_exceptions=True)
        if job.cancelled():
            return None
        return job.result()

    async def _run_task(self, task: ExtractionTask) -> ExtractionResult:
        return await self._extractors[task.kind].run_task(task)

    def _import(self, report: SessionReport) -> None:
        try:
            report.manifest_path = self._importer.import_artifacts(
                report.source, report.metadata, report.artifacts
            )
        except Exception as e:  # noqa: BLE001
            _log.error("Artifact import failed for %s: %s", report.source, e, exc_info=True)
            report.import_error = str(e)

    async def run(
        self,
        video_path: str | Path,
        progress: ProgressChannel | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SessionReport:
        """
        Detect, extract and import for one video.

        Raises AnalysisError when the video cannot be probed or analysed, and SessionError when
        there are no segments or no artifact could be extracted (unless cancelled).
        Setting cancel_event during scene detection kills the detection pass and returns an empty
        report with cancelled=True.
        """
        source = Path(video_path)
        progress = progress or null_channel()
        started = time.monotonic()
        if not source.is_file():
            raise AnalysisError(f"Video file not found: {source}")

        s = self._settings
        detector = SegmentDetector(self._runner, window_seconds=s.window_seconds, hwaccel=s.hwaccel)
        detection = await self._analyze(detector, source, progress.child(0.0, _DETECT_END), cancel_event)
        if detection is None:
            _log.info("Cancelled during scene detection of %s", source.name)
            report = SessionReport(
                source=source,
                metadata=None,
                segments=[],
                artifacts=[],
                failures=[],
                total_tasks=0,
                elapsed=time.monotonic() - started,
                concurrency=0,
                cancelled=True,
            )
            progress.report(1.0, report.summary())
            return report
        if not detection.segments:
            raise SessionError(f"No segments could be built for {source.name}")

        tasks = self.build_tasks(source, detection.segments, detection.metadata.duration)
        concurrency = compute_concurrency(s.kinds, len(tasks), self._cpu_count, s.max_concurrency)
        _log.info(
            "Extracting %d artifact(s) from %d segment(s) of %s with concurrency %d",
            len(tasks),
            len(detection.segments),
            source.name,
            concurrency,
        )

        pool: WorkerPool[ExtractionTask, ExtractionResult] = WorkerPool(
            self._run_task, progress=progress.child(_DETECT_END, _EXTRACT_END)
        )
        outcome = await pool.run(tasks, concurrency, cancel_event=cancel_event)

        progress.report(_EXTRACT_END, "Finalizing")
        report = SessionReport(
            source=source,
            metadata=detection.metadata,
            segments=list(detection.segments),
            artifacts=list(outcome.results),
            failures=list(outcome.failures),
            total_tasks=len(tasks),
            elapsed=time.monotonic() - started,
            concurrency=concurrency,
            cancelled=outcome.cancelled,
            skipped=len(outcome.skipped),
            degraded=detection.degraded,
        )
        if not report.artifacts and not report.cancelled:
            raise SessionError(
                f"No artifacts extracted from {source.name} (0/{len(tasks)} succeeded); "
                f"failed: {', '.join(report.failed_identifiers)}",
                report=report,
            )
        if report.failures:
            _log.warning(
                "%s: %s; failed: %s", source.name, report.summary(), ", ".join(report.failed_identifiers)
            )

        if report.artifacts:
            self._import(report)
        report.elapsed = time.monotonic() - started
        progress.report(1.0, report.summary())
        _log.info(
            "%s: %s (%d bytes) in %.1fs",
            source.name,
            report.summary(),
            report.total_bytes,
            report.elapsed,
        )
        return report

    async def run_batch(
        self,
        video_paths: Sequence[str | Path],
        progress: ProgressChannel | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchReport:
        """
        Process videos one after another. Per-video analysis/session errors are recorded and the
        batch continues; cancellation stops the batch after the current video's partial result.
        """
        progress = progress or null_channel()
        batch = BatchReport()
        total = len(video_paths)
        for i, path in enumerate(video_paths):
            if cancel_event is not None and cancel_event.is_set():
                batch.cancelled = True
                break
            source = Path(path)
            item = BatchItem(source=source)
            try:
                item.report = await self.run(source, progress.child(i / total, (i + 1) / total), cancel_event)
            except (AnalysisError, SessionError) as e:
                _log.error("Session failed for %s: %s", source, e)
                item.error = str(e)
            batch.items.append(item)
            if item.report is not None and item.report.cancelled:
                batch.cancelled = True
                break
        progress.report(1.0, f"{len(batch.succeeded)}/{total} video(s) processed")
        return batch
