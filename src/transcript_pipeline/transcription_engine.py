from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path

from transcript_pipeline.audio_chunker import MIB, AudioChunker
from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.domain.assets import AudioAsset
from transcript_pipeline.domain.models import (
    AcquisitionAttempt,
    AcquisitionTrace,
    AttemptOutcome,
    ErrorClass,
    Stage,
    TranscriptMethod,
    TranscriptResult,
)
from transcript_pipeline.errors import (
    NotAvailableError,
    PermanentError,
    PipelineError,
    RunCancelledError,
    TranscriptionFailedError,
)
from transcript_pipeline.retry import RetryPolicy, call_with_retry
from transcript_pipeline.speech_to_text import SpeechToTextBackend
from transcript_pipeline.strategies import Success, first_success

logger = logging.getLogger(__name__)

TRANSCRIPTION_STRATEGIES: tuple[str, ...] = ("openai_sdk", "direct_http", "chunked")
CHUNKED_STRATEGY = "chunked"


@dataclass(frozen=True)
class TranscriptionConfig:
    strategies: tuple[str, ...] = TRANSCRIPTION_STRATEGIES
    model: str = "whisper-1"
    language: str | None = None
    temperature: float = 0.1
    base_url: str | None = None
    max_upload_bytes: int = 25 * MIB
    small_upload_bytes: int = 20 * MIB
    max_prefix_minutes: int = 20
    chunk_minutes: int = 10
    max_chunks: int = 5
    chunk_backend: str = "direct_http"
    chunk_pause_seconds: float = 3.0
    strategy_pause_seconds: float = 2.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    large_file_bytes: int = 10 * MIB
    large_file_max_attempts: int = 2
    large_file_base_delay_seconds: float = 5.0

    def __post_init__(self) -> None:
        if not self.strategies:
            raise ValueError("strategies must be non-empty")
        if self.max_upload_bytes < 1:
            raise ValueError("max_upload_bytes must be >= 1")
        if not 0 < self.small_upload_bytes <= self.max_upload_bytes:
            raise ValueError("small_upload_bytes must be in (0, max_upload_bytes]")
        if self.max_prefix_minutes < 1:
            raise ValueError("max_prefix_minutes must be >= 1")
        if self.chunk_minutes < 1:
            raise ValueError("chunk_minutes must be >= 1")
        if self.max_chunks < 1:
            raise ValueError("max_chunks must be >= 1")
        if self.chunk_pause_seconds < 0 or self.strategy_pause_seconds < 0:
            raise ValueError("pause durations must be >= 0")
        if not 0.0 <= self.temperature <= 1.0:
            raise ValueError("temperature must be between 0 and 1")
        if self.large_file_max_attempts < 1:
            raise ValueError("large_file_max_attempts must be >= 1")


@dataclass(frozen=True)
class TranscribeOptions:
    media_id: str = "audio"
    language: str | None = None


@dataclass(frozen=True)
class _Transcript:
    text: str
    partial: bool = False
    approximate: bool = False
    chunk_count: int | None = None


class TranscriptionEngine:
    def __init__(
        self,
        *,
        chunker: AudioChunker,
        backends: Mapping[str, SpeechToTextBackend],
        config: TranscriptionConfig | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._chunker = chunker
        self._backends = dict(backends)
        self.config = config or TranscriptionConfig()
        self._sleep = sleep

    def prefix_minutes_for(self, size_bytes: int) -> int:
        """Largest prefix duration expected to fit under the chunked-upload threshold."""
        estimated = self._chunker.estimate_duration_minutes(size_bytes)
        fitting = math.floor(estimated * self.config.small_upload_bytes / max(size_bytes, 1))
        return max(1, min(self.config.max_prefix_minutes, fitting))

    def transcribe(
        self,
        asset: AudioAsset,
        options: TranscribeOptions | None = None,
        *,
        cancel: CancelToken | None = None,
        trace: AcquisitionTrace | None = None,
    ) -> TranscriptResult:
        """Transcribe ``asset``; intermediate files are removed on every exit path.

        The asset itself stays owned by the caller.
        """
        options = options or TranscribeOptions()
        token = cancel or CancelToken()
        trace = trace if trace is not None else AcquisitionTrace()

        if asset.size_bytes <= self.config.max_upload_bytes:
            return self._run_strategies(asset, options, token, trace, partial=False)

        minutes = self.prefix_minutes_for(asset.size_bytes)
        logger.info(
            "%s is %.1f MB (limit %.1f MB); transcribing the first %d minutes only",
            asset.local_path.name,
            asset.size_mb,
            self.config.max_upload_bytes / MIB,
            minutes,
        )
        with ExitStack() as stack:
            prefix = self._chunker.split_prefix(
                asset.local_path,
                minutes,
                media_id=options.media_id,
                cancel=token,
            )
            stack.callback(prefix.release)
            if prefix.size_bytes > self.config.max_upload_bytes:
                message = f"audio too large even after splitting ({prefix.size_mb:.1f} MB)"
                trace.record(
                    AcquisitionAttempt(
                        stage=Stage.transcription,
                        strategy_name="split_prefix",
                        outcome=AttemptOutcome.failure,
                        error_class=ErrorClass.permanent,
                        message=message,
                    ),
                )
                raise TranscriptionFailedError(message, trace=trace)
            return self._run_strategies(prefix, options, token, trace, partial=True)

    def _run_strategies(
        self,
        asset: AudioAsset,
        options: TranscribeOptions,
        cancel: CancelToken,
        trace: AcquisitionTrace,
        *,
        partial: bool,
    ) -> TranscriptResult:
        language = options.language or self.config.language
        candidates: list[tuple[str, Callable[[], _Transcript]]] = []
        for name in self.config.strategies:
            if name == CHUNKED_STRATEGY:
                candidates.append((name, lambda: self._transcribe_chunked(asset, options, language, cancel)))
                continue
            backend = self._backends.get(name)
            if backend is None:
                logger.debug("Transcription backend %s is not registered; skipping", name)
                continue
            candidates.append((name, self._whole_file_attempt(backend, asset, language, cancel)))

        outcome = first_success(
            candidates,
            stage=Stage.transcription,
            trace=trace,
            cancel=cancel,
            pause_seconds=self.config.strategy_pause_seconds,
            sleep=self._sleep,
        )
        if not isinstance(outcome, Success):
            raise TranscriptionFailedError(
                f"All {len(candidates)} transcription strategies failed for {asset.local_path.name}",
                trace=trace,
            )
        transcript = outcome.value
        return TranscriptResult(
            text=transcript.text,
            method=TranscriptMethod.audio,
            partial=partial or transcript.partial,
            approximate=asset.approximate or transcript.approximate,
            media_id=options.media_id,
            strategy_name=outcome.strategy_name,
            language=language,
            chunk_count=transcript.chunk_count,
        )

    def _policy_for(self, backend_name: str, size_bytes: int) -> RetryPolicy:
        policy = self.config.retry
        if backend_name == "openai_sdk" and size_bytes > self.config.large_file_bytes:
            return policy.with_overrides(
                max_attempts=self.config.large_file_max_attempts,
                base_delay_seconds=self.config.large_file_base_delay_seconds,
            )
        return policy

    def _whole_file_attempt(
        self,
        backend: SpeechToTextBackend,
        asset: AudioAsset,
        language: str | None,
        cancel: CancelToken,
    ) -> Callable[[], _Transcript]:
        def _attempt() -> _Transcript:
            text = self._upload(backend, asset.local_path, asset.size_bytes, language, cancel)
            return _Transcript(text=text)

        return _attempt

    def _upload(
        self,
        backend: SpeechToTextBackend,
        path: Path,
        size_bytes: int,
        language: str | None,
        cancel: CancelToken,
    ) -> str:
        return call_with_retry(
            lambda: backend.transcribe_file(path, language=language, cancel=cancel),
            policy=self._policy_for(backend.name, size_bytes),
            cancel=cancel,
            label=f"{backend.name} upload of {path.name}",
            sleep=self._sleep,
        )

    def _transcribe_chunked(
        self,
        asset: AudioAsset,
        options: TranscribeOptions,
        language: str | None,
        cancel: CancelToken,
    ) -> _Transcript:
        backend = self._backends.get(self.config.chunk_backend)
        if backend is None:
            raise PermanentError(f"chunk backend {self.config.chunk_backend} is not registered")
        if asset.size_bytes <= self.config.small_upload_bytes:
            text = self._upload(backend, asset.local_path, asset.size_bytes, language, cancel)
            return _Transcript(text=text, chunk_count=1)

        chunks = self._chunker.split_into_chunks(
            asset.local_path,
            chunk_minutes=self.config.chunk_minutes,
            max_chunks=self.config.max_chunks,
            media_id=options.media_id,
            cancel=cancel,
        )
        parts: list[str] = []
        approximate = False
        stopped_early = False
        with ExitStack() as stack:
            for chunk in chunks:
                stack.callback(chunk.release)
                if parts and self.config.chunk_pause_seconds > 0:
                    (self._sleep or cancel.wait)(self.config.chunk_pause_seconds)
                try:
                    text = self._upload(backend, chunk.local_path, chunk.size_bytes, language, cancel)
                except RunCancelledError:
                    raise
                except PipelineError as exc:
                    if not parts:
                        raise
                    logger.warning("Chunk %d failed, keeping %d earlier part(s): %s", chunk.ordinal, len(parts), exc)
                    stopped_early = True
                    break
                finally:
                    chunk.release()
                parts.append(f"[Part {chunk.ordinal}]\n{text}")
                approximate = approximate or chunk.approximate
        if not parts:
            raise NotAvailableError("audio produced no chunks to transcribe")
        return _Transcript(
            text="\n\n".join(parts),
            partial=stopped_early or chunks.truncated,
            approximate=approximate,
            chunk_count=len(parts),
        )
