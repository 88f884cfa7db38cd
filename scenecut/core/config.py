"""Application configuration (Pydantic v2). Load from scenecut.yml with optional env override."""

import os
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from scenecut.models.schema import ExtractionSettings

DEFAULT_CONFIG_ENV_VAR = "SCENECUT_CONFIG"
DEFAULT_CONFIG_FILENAME = "scenecut.yml"
DEFAULT_OUTPUT_ROOT = "scenecut-output"


class Settings(BaseModel):
    """
    Config loaded from YAML.

    When loading the default config, FFMPEG_PATH / FFPROBE_PATH environment variables override the
    executable paths (but not when an explicit config_path is provided).
    """

    model_config = {"extra": "ignore"}

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    output_root: str = DEFAULT_OUTPUT_ROOT
    log_level: str = "WARNING"
    forensics_dir: str = "logs/forensics"
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: object) -> str:
        if v is None or v == "":
            return "WARNING"
        return str(v).upper()


_config: Settings | None = None


class ConfigLoader:
    """
    Helper responsible for loading Settings from YAML and environment.

    - load_from_yaml(path, apply_env_override): read a YAML file and optionally apply env overrides.
    - load_default(): resolve the default config path from SCENECUT_CONFIG / scenecut.yml and
      apply FFMPEG_PATH / FFPROBE_PATH overrides when present.
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env: Mapping[str, str] = env if env is not None else os.environ

    def _apply_env(self, data: dict) -> dict:
        if self._env.get("FFMPEG_PATH"):
            data["ffmpeg_path"] = self._env["FFMPEG_PATH"]
        if self._env.get("FFPROBE_PATH"):
            data["ffprobe_path"] = self._env["FFPROBE_PATH"]
        return data

    def load_from_yaml(self, path: Path, apply_env_override: bool) -> Settings:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f)
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
        if apply_env_override:
            data = self._apply_env(data)
        return Settings.model_validate(data)

    def load_default(self) -> Settings:
        """Load the default Settings, using SCENECUT_CONFIG or scenecut.yml when present."""
        path_str = self._env.get(DEFAULT_CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILENAME
        path = Path(path_str)
        if path.exists():
            return self.load_from_yaml(path, apply_env_override=True)
        return Settings.model_validate(self._apply_env({}))


_loader = ConfigLoader()


def get_config(config_path: str | Path | None = None) -> Settings:
    """
    Return singleton config.

    - If config_path is given, load from it (without env overrides) and update the cache.
    - Otherwise, return the cached config if available, or load via ConfigLoader.load_default().
    """
    global _config
    if config_path is not None:
        _config = _loader.load_from_yaml(Path(config_path), apply_env_override=False)
        return _config
    if _config is not None:
        return _config
    _config = _loader.load_default()
    return _config


def reset_config() -> None:
    """Clear cached config (for tests)."""
    global _config
    _config = None
