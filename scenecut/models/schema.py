"""Pydantic contract for caller-supplied extraction settings."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from scenecut.models.entities import ArtifactKind


class ExtractionSettings(BaseModel):
    """
    Settings snapshot for one extraction session.

    sensitivity is FFmpeg's scene-score threshold (select='gt(scene,S)'): lower reports more cuts.
    It is backend-specific; a different detector would need its own range.
    """

    model_config = {"frozen": True, "extra": "ignore"}

    sensitivity: float = Field(0.3, ge=0.1, le=1.0)
    in_handle: int = Field(3, ge=0, description="Frames trimmed after each cut")
    out_handle: int = Field(3, ge=0, description="Frames trimmed before each cut")
    quality: int = Field(8, ge=1, le=10, description="1 (smallest) .. 10 (best)")
    kinds: list[ArtifactKind] = Field(default_factory=lambda: [ArtifactKind.frame, ArtifactKind.clip])

    image_format: Literal["jpg", "png"] = "jpg"
    video_codec: str = "libx264"
    video_bitrate: str = "8M"
    include_audio: bool = True
    hwaccel: str | None = None

    window_seconds: float = Field(10.0, gt=0)
    max_clip_seconds: float | None = Field(30.0, gt=0)
    analysis_frame_naming: bool = False

    max_concurrency: int | None = Field(None, ge=1)
    timeout_base_seconds: float = Field(30.0, gt=0)
    timeout_per_second: float = Field(4.0, ge=0)

    @field_validator("kinds", mode="before")
    @classmethod
    def normalize_kinds(cls, v: object) -> object:
        if isinstance(v, str):
            v = [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("kinds")
    @classmethod
    def kinds_non_empty(cls, v: list[ArtifactKind]) -> list[ArtifactKind]:
        if not v:
            raise ValueError("at least one artifact kind is required")
        # Deduplicate while keeping caller order.
        return list(dict.fromkeys(v))

    def wants(self, kind: ArtifactKind) -> bool:
        return kind in self.kinds
