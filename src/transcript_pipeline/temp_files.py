from __future__ import annotations

import logging
import re
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

SUPPORTED_AUDIO_EXTENSIONS: frozenset[str] = frozenset(
    {".mp3", ".mp4", ".mpeg", ".mpga", ".m4a", ".wav", ".webm", ".ogg", ".flac"},
)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]+")


def is_supported_audio_format(path: Path | str) -> bool:
    return Path(str(path)).suffix.lower() in SUPPORTED_AUDIO_EXTENSIONS


def safe_stem(value: str, *, max_length: int = 40) -> str:
    cleaned = _UNSAFE_RE.sub("_", value).strip("_")
    return (cleaned or "media")[:max_length]


def temp_stem(*, media_id: str, label: str) -> str:
    millis = int(time.time() * 1000)
    return f"{safe_stem(media_id)}_{safe_stem(label)}_{millis}_{uuid.uuid4().hex[:8]}"


def temp_path(temp_dir: Path, *, media_id: str, label: str, suffix: str) -> Path:
    temp_dir.mkdir(parents=True, exist_ok=True)
    return temp_dir / f"{temp_stem(media_id=media_id, label=label)}{suffix}"


def cleanup_old_temp_files(temp_dir: Path, *, max_age_hours: float = 1.0, now: float | None = None) -> int:
    """Delete files older than ``max_age_hours`` left behind by interrupted runs."""
    if max_age_hours < 0:
        raise ValueError("max_age_hours must be >= 0")
    if not temp_dir.is_dir():
        return 0
    cutoff = (time.time() if now is None else now) - max_age_hours * 3600
    removed = 0
    for path in sorted(temp_dir.iterdir()):
        if not path.is_file():
            continue
        try:
            if path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
        except OSError as exc:
            logger.warning("Could not remove stale temp file %s: %s", path, exc)
            continue
        removed += 1
    if removed:
        logger.info("Removed %d stale temp file(s) from %s", removed, temp_dir)
    return removed
