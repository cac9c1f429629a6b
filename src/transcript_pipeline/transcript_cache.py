from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class TranscriptCache(Protocol):
    """The two operations the pipeline needs from the feed store's cache."""

    def get_cached_transcript(self, media_id: str) -> str | None: ...

    def put_cached_transcript(self, media_id: str, text: str) -> None: ...


@dataclass(frozen=True)
class TranscriptCacheEntry:
    key: str
    text: str
    last_accessed: datetime


class InMemoryTranscriptCache:
    def __init__(self) -> None:
        self._entries: dict[str, TranscriptCacheEntry] = {}
        self._lock = threading.Lock()

    def get_cached_transcript(self, media_id: str) -> str | None:
        with self._lock:
            entry = self._entries.get(media_id)
            if entry is None:
                return None
            self._entries[media_id] = TranscriptCacheEntry(
                key=media_id,
                text=entry.text,
                last_accessed=datetime.now(UTC),
            )
            return entry.text

    def put_cached_transcript(self, media_id: str, text: str) -> None:
        with self._lock:
            self._entries[media_id] = TranscriptCacheEntry(key=media_id, text=text, last_accessed=datetime.now(UTC))

    def entry(self, media_id: str) -> TranscriptCacheEntry | None:
        with self._lock:
            return self._entries.get(media_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class JsonFileTranscriptCache:
    """One JSON document per media id; writes are atomic and last-write-wins."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, media_id: str) -> Path:
        digest = hashlib.sha256(media_id.encode("utf-8")).hexdigest()[:32]
        return self.root / f"{digest}.json"

    def get_cached_transcript(self, media_id: str) -> str | None:
        entry = self._read(self.path_for(media_id))
        if entry is None or entry.key != media_id:
            return None
        self._write(TranscriptCacheEntry(key=media_id, text=entry.text, last_accessed=datetime.now(UTC)))
        return entry.text

    def put_cached_transcript(self, media_id: str, text: str) -> None:
        self._write(TranscriptCacheEntry(key=media_id, text=text, last_accessed=datetime.now(UTC)))

    def cleanup_old_entries(self, *, max_age_days: float = 30.0, now: datetime | None = None) -> int:
        if max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")
        if not self.root.is_dir():
            return 0
        cutoff = (now or datetime.now(UTC)) - timedelta(days=max_age_days)
        removed = 0
        for path in sorted(self.root.glob("*.json")):
            entry = self._read(path)
            if entry is not None and entry.last_accessed >= cutoff:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove cache entry %s: %s", path, exc)
                continue
            removed += 1
        if removed:
            logger.info("Removed %d cache entries older than %s days", removed, max_age_days)
        return removed

    def _read(self, path: Path) -> TranscriptCacheEntry | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None
        try:
            return TranscriptCacheEntry(
                key=str(raw["key"]),
                text=str(raw["text"]),
                last_accessed=datetime.fromisoformat(str(raw["last_accessed"])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed cache entry %s: %s", path, exc)
            return None

    def _write(self, entry: TranscriptCacheEntry) -> None:
        payload = {
            "key": entry.key,
            "text": entry.text,
            "last_accessed": entry.last_accessed.isoformat(),
        }
        _atomic_write_text(self.path_for(entry.key), json.dumps(payload, ensure_ascii=False))


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        delete=False,
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    ) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)

    try:
        os.replace(tmp_path, path)
    finally:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass
