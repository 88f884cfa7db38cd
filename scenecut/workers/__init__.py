"""Bounded worker pool and the extraction session that drives it."""

from scenecut.workers.importer import ArtifactImporter, ManifestImporter, NoopImporter
from scenecut.workers.pool import PoolOutcome, WorkerPool
from scenecut.workers.session import ExtractionSession, SessionError, SessionReport, compute_concurrency

__all__ = [
    "ArtifactImporter",
    "ExtractionSession",
    "ManifestImporter",
    "NoopImporter",
    "PoolOutcome",
    "SessionError",
    "SessionReport",
    "WorkerPool",
    "compute_concurrency",
]
