from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from transcript_pipeline.domain import (
    AcquisitionAttempt,
    AcquisitionTrace,
    AttemptOutcome,
    AudioAsset,
    AudioChunk,
    ErrorClass,
    MediaKind,
    MediaReference,
    Stage,
    TranscriptMethod,
    TranscriptResult,
)

from .fakes import write_audio


def _attempt(name: str, stage: Stage, error_class: ErrorClass = ErrorClass.none) -> AcquisitionAttempt:
    outcome = AttemptOutcome.success if error_class == ErrorClass.none else AttemptOutcome.failure
    return AcquisitionAttempt(stage=stage, strategy_name=name, outcome=outcome, error_class=error_class)


def test_reference_round_trips_json() -> None:
    ref = MediaReference(id="abc", kind=MediaKind.episode, canonical_url="https://example.com/e/abc")

    assert MediaReference.model_validate_json(ref.model_dump_json()) == ref


def test_models_are_frozen_and_strict() -> None:
    ref = MediaReference(id="abc", kind=MediaKind.video, canonical_url="https://youtu.be/abc")

    with pytest.raises(ValidationError):
        ref.id = "other"  # type: ignore[misc]
    with pytest.raises(ValidationError):
        MediaReference(id="abc", kind=MediaKind.video, canonical_url="u", extra_field=1)  # type: ignore[call-arg]
    with pytest.raises(ValidationError):
        MediaReference(id="", kind=MediaKind.video, canonical_url="u")


def test_transcript_result_rejects_blank_text() -> None:
    with pytest.raises(ValidationError):
        TranscriptResult(text="  \n", method=TranscriptMethod.audio)

    result = TranscriptResult(text="hello", method=TranscriptMethod.audio, partial=True)
    assert result.partial
    assert not result.approximate


def test_trace_is_ordered_and_append_only() -> None:
    trace = AcquisitionTrace()
    assert not trace

    trace.record(_attempt("youtube_captions:en", Stage.subtitles, ErrorClass.not_available))
    trace.record(_attempt("ytdlp_library", Stage.download))
    trace.record(_attempt("openai_sdk", Stage.transcription, ErrorClass.transient))
    snapshot = trace.attempts

    assert [attempt.strategy_name for attempt in trace] == ["youtube_captions:en", "ytdlp_library", "openai_sdk"]
    assert [attempt.strategy_name for attempt in trace.failures()] == ["youtube_captions:en", "openai_sdk"]
    assert trace.for_stage(Stage.download)[0].succeeded
    assert isinstance(snapshot, tuple)
    trace.record(_attempt("direct_http", Stage.transcription))
    assert len(snapshot) == 3
    assert len(trace) == 4


def test_attempt_rejects_negative_duration() -> None:
    with pytest.raises(ValidationError):
        AcquisitionAttempt(
            stage=Stage.download,
            strategy_name="x",
            outcome=AttemptOutcome.failure,
            duration_ms=-1,
        )


def test_audio_asset_release_is_idempotent(tmp_path: Path) -> None:
    asset = AudioAsset.from_path(write_audio(tmp_path / "a.mp3", 2048), source_strategy="test")

    assert asset.size_bytes == 2048
    with asset:
        assert asset.exists
    assert not asset.exists
    asset.release()


def test_audio_chunk_context_manager_releases(tmp_path: Path) -> None:
    path = write_audio(tmp_path / "chunk.mp3", 1024)

    with AudioChunk(local_path=path, size_bytes=1024, start_offset_minutes=0, ordinal=1):
        assert path.exists()

    assert not path.exists()


def test_audio_chunk_validates_ordinal(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        AudioChunk(local_path=tmp_path / "x.mp3", size_bytes=1, start_offset_minutes=0, ordinal=0)
