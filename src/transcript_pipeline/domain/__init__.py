"""Core domain models for transcript-pipeline."""

from transcript_pipeline.domain.assets import AudioAsset, AudioChunk
from transcript_pipeline.domain.models import (
    AcquisitionAttempt,
    AcquisitionTrace,
    ArticleContext,
    AttemptOutcome,
    ErrorClass,
    MediaKind,
    MediaReference,
    Stage,
    TranscriptMethod,
    TranscriptResult,
)

__all__ = [
    "AcquisitionAttempt",
    "AcquisitionTrace",
    "ArticleContext",
    "AttemptOutcome",
    "AudioAsset",
    "AudioChunk",
    "ErrorClass",
    "MediaKind",
    "MediaReference",
    "Stage",
    "TranscriptMethod",
    "TranscriptResult",
]
