from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Self

from transcript_pipeline.audio_acquirer import AudioAcquirer, build_default_strategies
from transcript_pipeline.audio_chunker import AudioChunker
from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.description import (
    ContextDescriptionSource,
    DescriptionResolver,
    DescriptionSource,
    YouTubeDataApiSource,
    YtDlpMetadataSource,
)
from transcript_pipeline.domain.models import (
    AcquisitionAttempt,
    AcquisitionTrace,
    ArticleContext,
    AttemptOutcome,
    ErrorClass,
    MediaReference,
    Stage,
    TranscriptResult,
)
from transcript_pipeline.errors import AggregatedError, PipelineError, RunCancelledError
from transcript_pipeline.media_identifier import identify
from transcript_pipeline.pipeline_config import PipelineConfig
from transcript_pipeline.speech_to_text import DEFAULT_BASE_URL, DirectHttpBackend, OpenAISdkBackend
from transcript_pipeline.subtitle_fetcher import SubtitleFetcher, YouTubeCaptionProvider
from transcript_pipeline.transcript_cache import TranscriptCache
from transcript_pipeline.transcription_engine import TranscribeOptions, TranscriptionEngine
from transcript_pipeline.transport import build_http_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcquisitionReport:
    reference: MediaReference
    result: TranscriptResult
    trace: tuple[AcquisitionAttempt, ...]


class ContentAcquisitionOrchestrator:
    """Subtitles, then audio download plus transcription, then description.

    Stage failures are recovered here; only ``InvalidReferenceError``,
    ``AggregatedError`` and ``RunCancelledError`` reach the caller.
    """

    def __init__(
        self,
        *,
        subtitles: SubtitleFetcher,
        acquirer: AudioAcquirer,
        engine: TranscriptionEngine,
        descriptions: DescriptionResolver,
        identifier: Callable[[str], MediaReference] = identify,
        closers: Sequence[Callable[[], None]] = (),
    ) -> None:
        self._subtitles = subtitles
        self._acquirer = acquirer
        self._engine = engine
        self._descriptions = descriptions
        self._identifier = identifier
        self._closers = tuple(closers)

    @classmethod
    def from_config(cls, config: PipelineConfig, *, cache: TranscriptCache | None = None) -> Self:
        transport_config = config.transport.with_environment_proxy().tuned_for_host()
        client = build_http_client(transport_config)
        chunker = AudioChunker(temp_dir=config.temp_dir, config=config.chunker)
        transcription = config.transcription
        base_url = transcription.base_url or config.openai_base_url
        backends = {
            "openai_sdk": OpenAISdkBackend(
                api_key=config.openai_api_key,
                model=transcription.model,
                temperature=transcription.temperature,
                base_url=base_url,
                timeout_seconds=transport_config.timeout_seconds,
                http_client=client,
            ),
            "direct_http": DirectHttpBackend(
                api_key=config.openai_api_key,
                client=client,
                model=transcription.model,
                temperature=transcription.temperature,
                base_url=base_url or DEFAULT_BASE_URL,
                user_agent=transport_config.user_agent,
            ),
        }
        sources: list[DescriptionSource] = []
        if config.description.use_data_api:
            sources.append(
                YouTubeDataApiSource(
                    api_key=config.youtube_api_key,
                    client=client,
                    max_description_chars=config.description.max_description_chars,
                    max_tags=config.description.max_tags,
                ),
            )
        if config.description.use_ytdlp_metadata:
            sources.append(
                YtDlpMetadataSource(
                    min_description_chars=config.description.min_description_chars,
                    socket_timeout_seconds=config.download.socket_timeout_seconds,
                ),
            )
        if config.description.use_article_context:
            sources.append(ContextDescriptionSource())

        return cls(
            subtitles=SubtitleFetcher(provider=YouTubeCaptionProvider(), cache=cache, config=config.subtitles),
            acquirer=AudioAcquirer(
                temp_dir=config.temp_dir,
                strategies=build_default_strategies(config=config.download, client=client),
                config=config.download,
            ),
            engine=TranscriptionEngine(chunker=chunker, backends=backends, config=transcription),
            descriptions=DescriptionResolver(sources),
            closers=(client.close,),
        )

    def close(self) -> None:
        for closer in self._closers:
            closer()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def run(
        self,
        url: str,
        *,
        context: ArticleContext | None = None,
        cancel: CancelToken | None = None,
    ) -> AcquisitionReport:
        ref = self._identifier(url)
        return self.run_reference(ref, context=context, cancel=cancel)

    def run_reference(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext | None = None,
        cancel: CancelToken | None = None,
    ) -> AcquisitionReport:
        context = context or ArticleContext()
        token = cancel or CancelToken()
        trace = AcquisitionTrace()
        logger.info("Acquiring text for %s (%s)", ref.id, ref.kind.value)

        result = self._try_subtitles(ref, token, trace)
        if result is None:
            result = self._try_audio_pipeline(ref, context, token, trace)
        if result is None:
            result = self._try_description(ref, context, token, trace)
        if result is None:
            raise AggregatedError(f"No text could be acquired for {ref.id}", trace=trace)

        logger.info("Acquired %s text for %s via %s", result.method.value, ref.id, result.strategy_name)
        return AcquisitionReport(reference=ref, result=result, trace=trace.attempts)

    def _try_subtitles(
        self,
        ref: MediaReference,
        cancel: CancelToken,
        trace: AcquisitionTrace,
    ) -> TranscriptResult | None:
        try:
            return self._subtitles.fetch_subtitles(ref, cancel=cancel, trace=trace)
        except RunCancelledError:
            raise
        except PipelineError as exc:
            logger.info("Subtitles unavailable for %s: %s", ref.id, exc)
        except Exception as exc:
            _record_unexpected(trace, Stage.subtitles, exc)
        return None

    def _try_audio_pipeline(
        self,
        ref: MediaReference,
        context: ArticleContext,
        cancel: CancelToken,
        trace: AcquisitionTrace,
    ) -> TranscriptResult | None:
        try:
            asset = self._acquirer.acquire(ref, context=context, cancel=cancel, trace=trace)
        except RunCancelledError:
            raise
        except PipelineError as exc:
            logger.info("Audio download failed for %s: %s", ref.id, exc)
            return None
        except Exception as exc:
            _record_unexpected(trace, Stage.download, exc)
            return None

        with asset:
            try:
                return self._engine.transcribe(
                    asset,
                    TranscribeOptions(media_id=ref.id),
                    cancel=cancel,
                    trace=trace,
                )
            except RunCancelledError:
                raise
            except PipelineError as exc:
                logger.info("Transcription failed for %s: %s", ref.id, exc)
            except Exception as exc:
                _record_unexpected(trace, Stage.transcription, exc)
        return None

    def _try_description(
        self,
        ref: MediaReference,
        context: ArticleContext,
        cancel: CancelToken,
        trace: AcquisitionTrace,
    ) -> TranscriptResult | None:
        try:
            return self._descriptions.describe(ref, context=context, cancel=cancel, trace=trace)
        except RunCancelledError:
            raise
        except PipelineError as exc:
            logger.info("No description for %s: %s", ref.id, exc)
        except Exception as exc:
            _record_unexpected(trace, Stage.description, exc)
        return None


def _record_unexpected(trace: AcquisitionTrace, stage: Stage, exc: Exception) -> None:
    logger.exception("Unexpected error in %s stage", stage.value)
    trace.record(
        AcquisitionAttempt(
            stage=stage,
            strategy_name=f"{stage.value}_stage",
            outcome=AttemptOutcome.failure,
            error_class=ErrorClass.permanent,
            message=f"{type(exc).__name__}: {exc}",
        ),
    )
