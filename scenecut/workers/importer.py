"""Hand-off of finished artifacts to an external library. Injected into ExtractionSession; no-op by default."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, Sequence

from scenecut.core.io_utils import ensure_dir
from scenecut.models.entities import ExtractionResult, VideoMetadata

_log = logging.getLogger(__name__)


class ArtifactImporter(Protocol):
    """Receives the ordered artifact list of one video once extraction has finished."""

    def import_artifacts(
        self,
        source: Path,
        metadata: VideoMetadata,
        artifacts: Sequence[ExtractionResult],
    ) -> Path | None: ...


class NoopImporter:
    def import_artifacts(
        self,
        source: Path,
        metadata: VideoMetadata,
        artifacts: Sequence[ExtractionResult],
    ) -> Path | None:
        return None


class ManifestImporter:
    """
    Writes `{stem}_manifest.json` next to the artifacts: video metadata plus one entry per file
    (path, source, segment index, timing, method). Returns the manifest path.
    """

    def __init__(self, output_root: Path | str) -> None:
        self._output_root = Path(output_root)

    def manifest_path(self, source: Path) -> Path:
        return self._output_root / f"{source.stem}_manifest.json"

    def build_manifest(
        self,
        source: Path,
        metadata: VideoMetadata,
        artifacts: Sequence[ExtractionResult],
    ) -> dict[str, Any]:
        items = [result.to_dict() for result in artifacts]
        return {
            "source": str(source),
            "created_at": datetime.now(timezone.utc).isoformat(),
            "video": {
                "duration": metadata.duration,
                "width": metadata.width,
                "height": metadata.height,
                "fps": metadata.fps,
                "total_frames": metadata.total_frames,
                "codec": metadata.codec,
                "bitrate": metadata.bitrate,
            },
            "artifacts": items,
        }

    def import_artifacts(
        self,
        source: Path,
        metadata: VideoMetadata,
        artifacts: Sequence[ExtractionResult],
    ) -> Path | None:
        path = self.manifest_path(source)
        ensure_dir(path.parent)
        payload = self.build_manifest(source, metadata, artifacts)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        _log.info("Wrote manifest for %d artifact(s): %s", len(artifacts), path)
        return path
