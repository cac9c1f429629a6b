from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DomainModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class MediaKind(StrEnum):
    video = "video"
    episode = "episode"
    direct_audio = "direct_audio"


class TranscriptMethod(StrEnum):
    subtitle = "subtitle"
    audio = "audio"
    description = "description"


class AttemptOutcome(StrEnum):
    success = "success"
    failure = "failure"


class ErrorClass(StrEnum):
    none = "none"
    not_available = "not_available"
    transient = "transient"
    permanent = "permanent"
    invalid_reference = "invalid_reference"
    cancelled = "cancelled"


class Stage(StrEnum):
    subtitles = "subtitles"
    download = "download"
    transcription = "transcription"
    description = "description"


class MediaReference(DomainModel):
    id: Annotated[str, Field(min_length=1)]
    kind: MediaKind
    canonical_url: Annotated[str, Field(min_length=1)]


class ArticleContext(DomainModel):
    """Article metadata the feed store already owns for a media item."""

    title: str | None = None
    description: str | None = None
    enclosure_url: str | None = None
    feed_url: str | None = None


class AcquisitionAttempt(DomainModel):
    stage: Stage
    strategy_name: Annotated[str, Field(min_length=1)]
    outcome: AttemptOutcome
    error_class: ErrorClass = ErrorClass.none
    duration_ms: Annotated[int, Field(ge=0)] = 0
    message: str | None = None
    recorded_at: datetime = Field(default_factory=_utc_now)

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.success


class TranscriptResult(DomainModel):
    text: str
    method: TranscriptMethod
    partial: bool = False
    approximate: bool = False
    media_id: str | None = None
    strategy_name: str | None = None
    language: str | None = None
    chunk_count: Annotated[int, Field(ge=0)] | None = None

    @field_validator("text")
    @classmethod
    def _validate_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must be non-empty")
        return value


class AcquisitionTrace:
    """Ordered, append-only log of every strategy tried during one run."""

    def __init__(self) -> None:
        self._attempts: list[AcquisitionAttempt] = []

    def record(self, attempt: AcquisitionAttempt) -> AcquisitionAttempt:
        self._attempts.append(attempt)
        return attempt

    @property
    def attempts(self) -> tuple[AcquisitionAttempt, ...]:
        return tuple(self._attempts)

    def for_stage(self, stage: Stage) -> tuple[AcquisitionAttempt, ...]:
        return tuple(attempt for attempt in self._attempts if attempt.stage == stage)

    def failures(self) -> tuple[AcquisitionAttempt, ...]:
        return tuple(attempt for attempt in self._attempts if not attempt.succeeded)

    def __iter__(self) -> Iterator[AcquisitionAttempt]:
        return iter(tuple(self._attempts))

    def __len__(self) -> int:
        return len(self._attempts)

    def __bool__(self) -> bool:
        return bool(self._attempts)
