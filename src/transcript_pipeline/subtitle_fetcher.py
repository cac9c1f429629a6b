from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from youtube_transcript_api import YouTubeTranscriptApi
from youtube_transcript_api._errors import (
    CouldNotRetrieveTranscript,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
    YouTubeRequestFailed,
)

from transcript_pipeline.cancellation import CancelToken, call_interruptibly
from transcript_pipeline.domain.models import (
    AcquisitionAttempt,
    AcquisitionTrace,
    AttemptOutcome,
    ErrorClass,
    MediaKind,
    MediaReference,
    Stage,
    TranscriptMethod,
    TranscriptResult,
)
from transcript_pipeline.errors import NotAvailableError, TransientError
from transcript_pipeline.strategies import Success, first_success
from transcript_pipeline.transcript_cache import TranscriptCache

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SubtitleConfig:
    languages: tuple[str, ...] = ("en", "ja", "en-US")
    use_cache: bool = True
    min_chars: int = 1

    def __post_init__(self) -> None:
        if not self.languages:
            raise ValueError("languages must be non-empty")
        if any(not language.strip() for language in self.languages):
            raise ValueError("languages must not contain empty entries")
        if self.min_chars < 1:
            raise ValueError("min_chars must be >= 1")


@runtime_checkable
class CaptionProvider(Protocol):
    name: str

    def fetch(self, video_id: str, *, language: str, cancel: CancelToken) -> str: ...


class YouTubeCaptionProvider:
    name = "youtube_captions"

    def __init__(self, api: Any | None = None) -> None:
        self._api = api if api is not None else YouTubeTranscriptApi()

    def fetch(self, video_id: str, *, language: str, cancel: CancelToken) -> str:
        def _call() -> str:
            fetched = self._api.fetch(video_id, languages=[language])
            return " ".join(snippet.text for snippet in fetched)

        try:
            text = call_interruptibly(_call, cancel=cancel, name=f"captions-{video_id}-{language}")
        except (TranscriptsDisabled, NoTranscriptFound, VideoUnavailable) as exc:
            raise NotAvailableError(f"no {language} captions: {type(exc).__name__}") from exc
        except (RequestBlocked, YouTubeRequestFailed) as exc:
            raise TransientError(f"caption request failed: {type(exc).__name__}") from exc
        except CouldNotRetrieveTranscript as exc:
            raise NotAvailableError(f"captions unavailable: {type(exc).__name__}") from exc
        except OSError as exc:
            raise TransientError(f"caption transport error: {exc}") from exc
        return _WHITESPACE_RE.sub(" ", text).strip()


class SubtitleFetcher:
    def __init__(
        self,
        *,
        provider: CaptionProvider,
        cache: TranscriptCache | None = None,
        config: SubtitleConfig | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self.config = config or SubtitleConfig()

    def fetch_subtitles(
        self,
        ref: MediaReference,
        *,
        cancel: CancelToken | None = None,
        trace: AcquisitionTrace | None = None,
    ) -> TranscriptResult:
        """Return existing captions for ``ref`` or raise ``NotAvailableError``.

        Every language tried is recorded in ``trace`` with its own error class;
        the caller only ever sees ``NotAvailableError``.
        """
        token = cancel or CancelToken()
        trace = trace if trace is not None else AcquisitionTrace()

        if ref.kind != MediaKind.video:
            trace.record(
                AcquisitionAttempt(
                    stage=Stage.subtitles,
                    strategy_name=self._provider.name,
                    outcome=AttemptOutcome.failure,
                    error_class=ErrorClass.not_available,
                    message=f"captions are not offered for {ref.kind.value} media",
                ),
            )
            raise NotAvailableError(f"no captions for {ref.kind.value} media")

        cached = self._read_cache(ref.id)
        if cached is not None:
            trace.record(
                AcquisitionAttempt(
                    stage=Stage.subtitles,
                    strategy_name="cache",
                    outcome=AttemptOutcome.success,
                ),
            )
            logger.info("Using cached subtitles for %s", ref.id)
            return TranscriptResult(
                text=cached,
                method=TranscriptMethod.subtitle,
                media_id=ref.id,
                strategy_name="cache",
            )

        candidates = [
            (f"{self._provider.name}:{language}", self._language_attempt(ref.id, language, token))
            for language in self.config.languages
        ]
        outcome = first_success(candidates, stage=Stage.subtitles, trace=trace, cancel=token)
        if not isinstance(outcome, Success):
            raise NotAvailableError(f"no subtitles available for {ref.id}")

        text, language = outcome.value
        self._write_cache(ref.id, text)
        return TranscriptResult(
            text=text,
            method=TranscriptMethod.subtitle,
            media_id=ref.id,
            strategy_name=outcome.strategy_name,
            language=language,
        )

    def _language_attempt(
        self,
        video_id: str,
        language: str,
        cancel: CancelToken,
    ) -> Callable[[], tuple[str, str]]:
        def _attempt() -> tuple[str, str]:
            text = self._provider.fetch(video_id, language=language, cancel=cancel)
            if len(text.strip()) < self.config.min_chars:
                raise NotAvailableError(f"{language} captions are empty")
            return text.strip(), language

        return _attempt

    def _read_cache(self, media_id: str) -> str | None:
        if self._cache is None or not self.config.use_cache:
            return None
        try:
            cached = self._cache.get_cached_transcript(media_id)
        except Exception as exc:
            logger.warning("Transcript cache lookup failed for %s: %s", media_id, exc)
            return None
        if cached is None or not cached.strip():
            return None
        return cached

    def _write_cache(self, media_id: str, text: str) -> None:
        if self._cache is None or not self.config.use_cache:
            return
        try:
            self._cache.put_cached_transcript(media_id, text)
        except Exception as exc:
            logger.warning("Transcript cache write failed for %s: %s", media_id, exc)
