from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from transcript_pipeline.transcript_cache import (
    InMemoryTranscriptCache,
    JsonFileTranscriptCache,
    TranscriptCache,
)


def test_caches_satisfy_protocol(tmp_path: Path) -> None:
    assert isinstance(InMemoryTranscriptCache(), TranscriptCache)
    assert isinstance(JsonFileTranscriptCache(tmp_path), TranscriptCache)


def test_in_memory_cache_round_trip_updates_access_time() -> None:
    cache = InMemoryTranscriptCache()
    cache.put_cached_transcript("abc", "first")
    cache.put_cached_transcript("abc", "second")
    written = cache.entry("abc")

    assert cache.get_cached_transcript("abc") == "second"
    assert cache.get_cached_transcript("missing") is None
    assert len(cache) == 1
    read = cache.entry("abc")
    assert written is not None and read is not None
    assert read.last_accessed >= written.last_accessed


def test_file_cache_persists_across_instances(tmp_path: Path) -> None:
    JsonFileTranscriptCache(tmp_path).put_cached_transcript("dQw4w9WgXcQ", "こんにちは")

    assert JsonFileTranscriptCache(tmp_path).get_cached_transcript("dQw4w9WgXcQ") == "こんにちは"
    assert [path.suffix for path in tmp_path.iterdir()] == [".json"]


def test_file_cache_ignores_corrupt_and_foreign_entries(tmp_path: Path) -> None:
    cache = JsonFileTranscriptCache(tmp_path)
    cache.path_for("broken").write_text("{not json", encoding="utf-8")
    cache.path_for("other").write_text(
        json.dumps({"key": "someone-else", "text": "x", "last_accessed": datetime.now(UTC).isoformat()}),
        encoding="utf-8",
    )

    assert cache.get_cached_transcript("broken") is None
    assert cache.get_cached_transcript("other") is None
    assert cache.get_cached_transcript("never-written") is None


def test_cleanup_removes_entries_not_read_recently(tmp_path: Path) -> None:
    cache = JsonFileTranscriptCache(tmp_path)
    cache.put_cached_transcript("old", "old text")
    cache.put_cached_transcript("new", "new text")
    stale = datetime.now(UTC) - timedelta(days=45)
    cache.path_for("old").write_text(
        json.dumps({"key": "old", "text": "old text", "last_accessed": stale.isoformat()}),
        encoding="utf-8",
    )

    removed = cache.cleanup_old_entries(max_age_days=30)

    assert removed == 1
    assert cache.get_cached_transcript("old") is None
    assert cache.get_cached_transcript("new") == "new text"


def test_cleanup_on_missing_directory_is_noop(tmp_path: Path) -> None:
    assert JsonFileTranscriptCache(tmp_path / "missing").cleanup_old_entries() == 0
