from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from typer.testing import CliRunner

from transcript_pipeline import __version__
from transcript_pipeline.domain.models import (
    AcquisitionAttempt,
    AcquisitionTrace,
    ArticleContext,
    AttemptOutcome,
    ErrorClass,
    MediaReference,
    Stage,
    TranscriptMethod,
    TranscriptResult,
)
from transcript_pipeline.entrypoints import fetch as fetch_entrypoint
from transcript_pipeline.entrypoints import maintenance
from transcript_pipeline.entrypoints.cli import app
from transcript_pipeline.errors import AggregatedError
from transcript_pipeline.logging_setup import LOGGER_NAME
from transcript_pipeline.orchestrator import AcquisitionReport
from transcript_pipeline.pipeline_config import PipelineConfig
from transcript_pipeline.transcript_cache import JsonFileTranscriptCache, TranscriptCache

VIDEO_URL = "https://youtu.be/dQw4w9WgXcQ"


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("TRANSCRIPT_PIPELINE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


class _StubOrchestrator:
    def __init__(self, *, result: TranscriptResult | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.runs: list[tuple[MediaReference, ArticleContext | None]] = []
        self.closed = False
        self.cache: TranscriptCache | None = None

    def __enter__(self) -> _StubOrchestrator:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.closed = True

    def run_reference(self, ref: MediaReference, *, context: ArticleContext | None = None, cancel: object = None):
        self.runs.append((ref, context))
        if self.error is not None:
            raise self.error
        assert self.result is not None
        attempt = AcquisitionAttempt(
            stage=Stage.subtitles,
            strategy_name="youtube_captions:en",
            outcome=AttemptOutcome.success,
        )
        return AcquisitionReport(reference=ref, result=self.result, trace=(attempt,))


def _install(monkeypatch: pytest.MonkeyPatch, stub: _StubOrchestrator) -> None:
    def _build(config: PipelineConfig, cache: TranscriptCache | None) -> _StubOrchestrator:
        stub.cache = cache
        return stub

    monkeypatch.setattr(fetch_entrypoint, "_build_orchestrator", _build)


def _subtitle_result(text: str = "never gonna give you up") -> TranscriptResult:
    return TranscriptResult(text=text, method=TranscriptMethod.subtitle, media_id="dQw4w9WgXcQ")


def test_version_command() -> None:
    result = CliRunner().invoke(app, ["version"])

    assert result.exit_code == 0, result.output
    assert result.stdout.strip() == __version__


def test_identify_prints_reference() -> None:
    result = CliRunner().invoke(app, ["identify", "https://m.youtube.com/watch?v=dQw4w9WgXcQ&t=42"])

    assert result.exit_code == 0, result.output
    assert "id: dQw4w9WgXcQ" in result.stdout
    assert "kind: video" in result.stdout
    assert "canonical_url: https://www.youtube.com/watch?v=dQw4w9WgXcQ" in result.stdout


def test_identify_rejects_unsupported_url() -> None:
    result = CliRunner().invoke(app, ["identify", "https://example.com/blog/post"])

    assert result.exit_code == 2


def test_fetch_prints_text_and_passes_context(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _StubOrchestrator(result=_subtitle_result())
    _install(monkeypatch, stub)

    result = CliRunner().invoke(
        app,
        ["fetch", VIDEO_URL, "--title", "Rick", "--description", "Classic", "--cache-dir", str(tmp_path / "c")],
    )

    assert result.exit_code == 0, result.output
    assert result.stdout.strip() == "never gonna give you up"
    ref, context = stub.runs[0]
    assert ref.id == "dQw4w9WgXcQ"
    assert context == ArticleContext(title="Rick", description="Classic")
    assert isinstance(stub.cache, JsonFileTranscriptCache)
    assert stub.cache.root == tmp_path / "c"
    assert stub.closed


def test_fetch_passes_podcast_feed_to_context(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _StubOrchestrator(result=_subtitle_result())
    _install(monkeypatch, stub)

    result = CliRunner().invoke(
        app,
        [
            "fetch",
            "https://open.spotify.com/episode/abc",
            "--title",
            "Episode 3",
            "--feed-url",
            "https://feeds.example.com/show/rss",
            "--no-cache",
        ],
    )

    assert result.exit_code == 0, result.output
    _ref, context = stub.runs[0]
    assert context == ArticleContext(title="Episode 3", feed_url="https://feeds.example.com/show/rss")


def test_fetch_without_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _StubOrchestrator(result=_subtitle_result())
    _install(monkeypatch, stub)

    result = CliRunner().invoke(app, ["fetch", VIDEO_URL, "--no-cache"])

    assert result.exit_code == 0, result.output
    assert stub.cache is None


def test_fetch_json_output(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _StubOrchestrator(result=_subtitle_result()))

    result = CliRunner().invoke(app, ["fetch", VIDEO_URL, "--json", "--no-cache"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["reference"]["kind"] == "video"
    assert payload["result"]["method"] == "subtitle"
    assert payload["trace"][0]["strategy_name"] == "youtube_captions:en"


def test_fetch_writes_output_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _StubOrchestrator(result=_subtitle_result("text on disk")))
    output = tmp_path / "out" / "transcript.txt"

    result = CliRunner().invoke(app, ["fetch", VIDEO_URL, "--no-cache", "-o", str(output)])

    assert result.exit_code == 0, result.output
    assert output.read_text(encoding="utf-8") == "text on disk\n"


def test_fetch_reports_aggregated_error(monkeypatch: pytest.MonkeyPatch) -> None:
    trace = AcquisitionTrace()
    trace.record(
        AcquisitionAttempt(
            stage=Stage.download,
            strategy_name="ytdlp_library",
            outcome=AttemptOutcome.failure,
            error_class=ErrorClass.transient,
            message="connection reset",
        ),
    )
    _install(monkeypatch, _StubOrchestrator(error=AggregatedError("nothing worked", trace=trace)))

    result = CliRunner().invoke(app, ["fetch", VIDEO_URL, "--no-cache", "--show-trace"])

    assert result.exit_code == 1
    assert "Try again later" in result.output
    assert "[download] ytdlp_library: failure (transient" in result.output
    assert "connection reset" in result.output


def test_fetch_rejects_invalid_url(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _StubOrchestrator(result=_subtitle_result())
    _install(monkeypatch, stub)

    result = CliRunner().invoke(app, ["fetch", "not a url", "--no-cache"])

    assert result.exit_code == 2
    assert stub.runs == []


def test_fetch_rejects_invalid_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("bogus: 1\n", encoding="utf-8")
    _install(monkeypatch, _StubOrchestrator(result=_subtitle_result()))

    result = CliRunner().invoke(app, ["fetch", VIDEO_URL, "--config", str(config_path)])

    assert result.exit_code == 2


def test_tools_reports_availability(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        maintenance,
        "check_available_tools",
        lambda commands: {command: command != "ffmpeg" for command in commands},
    )
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)

    result = CliRunner().invoke(app, ["tools"])

    assert result.exit_code == 0, result.output
    assert "ffmpeg: missing" in result.stdout
    assert "yt-dlp: found" in result.stdout
    assert "OPENAI_API_KEY: set" in result.stdout
    assert "YOUTUBE_API_KEY: not set" in result.stdout


def test_clean_temp_removes_only_stale_files(tmp_path: Path) -> None:
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    stale = temp_dir / "old.mp3"
    fresh = temp_dir / "new.mp3"
    stale.write_bytes(b"x")
    fresh.write_bytes(b"y")
    two_hours_ago = time.time() - 7200
    os.utime(stale, (two_hours_ago, two_hours_ago))

    result = CliRunner().invoke(app, ["clean-temp", "--temp-dir", str(temp_dir)])

    assert result.exit_code == 0, result.output
    assert "Removed 1 temp file(s)" in result.stdout
    assert not stale.exists()
    assert fresh.exists()


def test_cache_cleanup_command(tmp_path: Path) -> None:
    cache = JsonFileTranscriptCache(tmp_path / "cache")
    cache.put_cached_transcript("abc", "text")

    result = CliRunner().invoke(
        app,
        ["cache-cleanup", "--cache-dir", str(tmp_path / "cache"), "--max-age-days", "0"],
    )

    assert result.exit_code == 0, result.output
    assert "Removed 1 cache entry" in result.stdout
    assert cache.get_cached_transcript("abc") is None
