from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import yaml

from transcript_pipeline.audio_acquirer import DownloadConfig
from transcript_pipeline.audio_chunker import AudioChunkerConfig
from transcript_pipeline.description import DescriptionConfig
from transcript_pipeline.subtitle_fetcher import SubtitleConfig
from transcript_pipeline.transcription_engine import TranscriptionConfig
from transcript_pipeline.transport import TransportConfig


class PipelineConfigError(RuntimeError):
    pass


def default_temp_dir() -> Path:
    return Path(tempfile.gettempdir()) / "transcript-pipeline"


def default_cache_dir() -> Path:
    root = os.environ.get("XDG_CACHE_HOME")
    base = Path(root) if root else Path.home() / ".cache"
    return base / "transcript-pipeline" / "transcripts"


@dataclass(frozen=True)
class PipelineConfig:
    subtitles: SubtitleConfig = field(default_factory=SubtitleConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    chunker: AudioChunkerConfig = field(default_factory=AudioChunkerConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    description: DescriptionConfig = field(default_factory=DescriptionConfig)
    temp_dir: Path = field(default_factory=default_temp_dir)
    cache_dir: Path = field(default_factory=default_cache_dir)
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    youtube_api_key: str | None = None
    source: str | None = None


_SECTIONS: dict[str, type[Any]] = {
    "subtitles": SubtitleConfig,
    "download": DownloadConfig,
    "chunker": AudioChunkerConfig,
    "transcription": TranscriptionConfig,
    "transport": TransportConfig,
    "description": DescriptionConfig,
}
_PATH_KEYS = ("temp_dir", "cache_dir")


def global_config_path() -> Path:
    override = os.environ.get("TRANSCRIPT_PIPELINE_CONFIG")
    if override:
        return Path(override).expanduser()
    root = os.environ.get("XDG_CONFIG_HOME")
    if root:
        base = Path(root)
    else:
        base = Path.home() / ".config"
    return base / "transcript-pipeline" / "config.yaml"


def load_pipeline_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> PipelineConfig:
    env = os.environ if env is None else env
    config_path = path if path is not None else global_config_path()
    data = _load_yaml_mapping(config_path)
    source = str(config_path)

    unknown = sorted(set(data) - set(_SECTIONS) - set(_PATH_KEYS))
    if unknown:
        raise PipelineConfigError(f"Unknown config key(s) {', '.join(unknown)} in {source}")

    sections = {
        name: _parse_section(cls, data.get(name), key=name, source=source) for name, cls in _SECTIONS.items()
    }
    paths = {key: _parse_path(data.get(key), key=key, source=source) for key in _PATH_KEYS}
    return PipelineConfig(
        **sections,
        temp_dir=paths["temp_dir"] or default_temp_dir(),
        cache_dir=paths["cache_dir"] or default_cache_dir(),
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        openai_base_url=env.get("OPENAI_BASE_URL") or None,
        youtube_api_key=env.get("YOUTUBE_API_KEY") or None,
        source=source if config_path.exists() else None,
    )


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise PipelineConfigError(f"Invalid YAML at {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise PipelineConfigError(f"Expected mapping YAML at {path}")
    return dict(loaded)


def _parse_section(cls: type[Any], raw: object, *, key: str, source: str) -> Any:
    defaults = cls()
    if raw is None:
        return defaults
    if not isinstance(raw, Mapping):
        raise PipelineConfigError(f"Expected mapping for {key} in {source}")

    known = {item.name for item in fields(cls)}
    values: dict[str, Any] = {}
    for name, value in raw.items():
        if name not in known:
            raise PipelineConfigError(f"Unknown key {key}.{name} in {source}")
        values[name] = _coerce(value, default=getattr(defaults, name), key=f"{key}.{name}", source=source)
    try:
        return cls(**values)
    except (TypeError, ValueError) as exc:
        raise PipelineConfigError(f"Invalid {key} config in {source}: {exc}") from exc


def _coerce(value: object, *, default: object, key: str, source: str) -> object:
    if is_dataclass(default) and not isinstance(default, type):
        return _parse_section(type(default), value, key=key, source=source)
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise PipelineConfigError(f"{key} must be a boolean in {source}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise PipelineConfigError(f"{key} must be an integer in {source}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise PipelineConfigError(f"{key} must be a number in {source}")
        return float(value)
    if isinstance(default, tuple):
        if isinstance(value, str) or not isinstance(value, list):
            raise PipelineConfigError(f"{key} must be a list of strings in {source}")
        if not all(isinstance(item, str) for item in value):
            raise PipelineConfigError(f"{key} must be a list of strings in {source}")
        return tuple(value)
    if value is None and default is None:
        return None
    if not isinstance(value, str):
        raise PipelineConfigError(f"{key} must be a string in {source}")
    return value


def _parse_path(raw: object, *, key: str, source: str) -> Path | None:
    if raw is None:
        return None
    if not isinstance(raw, str) or not raw.strip():
        raise PipelineConfigError(f"{key} must be a non-empty string in {source}")
    return Path(raw).expanduser()
