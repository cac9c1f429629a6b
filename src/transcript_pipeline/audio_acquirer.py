from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit

import httpx
import yt_dlp

from transcript_pipeline.cancellation import CancelToken, call_interruptibly
from transcript_pipeline.domain.assets import AudioAsset
from transcript_pipeline.domain.models import (
    AcquisitionTrace,
    ArticleContext,
    ErrorClass,
    MediaKind,
    MediaReference,
    Stage,
)
from transcript_pipeline.errors import (
    AcquisitionFailedError,
    NotAvailableError,
    PermanentError,
    classify_status,
    error_for_class,
    wrap_exception,
)
from transcript_pipeline.podcast_feed import fetch_feed_xml, is_feed_url, match_episode, parse_feed_episodes
from transcript_pipeline.strategies import Success, first_success
from transcript_pipeline.temp_files import SUPPORTED_AUDIO_EXTENSIONS, temp_stem
from transcript_pipeline.tools import ToolResult, run_tool

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
_PARTIAL_SUFFIXES = frozenset({".part", ".ytdl", ".temp", ".tmp"})
_STREAM_CHUNK_BYTES = 64 * 1024
_FEED_CONTENT_TYPES = frozenset({"application/rss+xml", "application/xml", "application/atom+xml"})

_NOT_AVAILABLE_MARKERS: tuple[str, ...] = (
    "video unavailable",
    "private video",
    "this video is not available",
    "has been removed",
    "members-only",
    "sign in to confirm your age",
    "unsupported url",
    "drm protected",
    "no video formats found",
    "requested format is not available",
)
_TRANSIENT_MARKERS: tuple[str, ...] = (
    "http error 429",
    "too many requests",
    "timed out",
    "connection reset",
    "temporary failure in name resolution",
    "http error 5",
    "unable to download webpage",
)

_CONTENT_TYPE_SUFFIXES: dict[str, str] = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/aac": ".m4a",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
    "video/mp4": ".mp4",
}

VIDEO_STRATEGIES: tuple[str, ...] = ("ytdlp_library", "ytdlp_cli", "ytdlp_mobile_clients", "youtube_dl_cli")
AUDIO_STRATEGIES: tuple[str, ...] = ("http_enclosure", "rss_enclosure", "ytdlp_library", "ytdlp_cli")


@dataclass(frozen=True)
class DownloadConfig:
    video_strategies: tuple[str, ...] = VIDEO_STRATEGIES
    audio_strategies: tuple[str, ...] = AUDIO_STRATEGIES
    download_timeout_seconds: float = 600.0
    socket_timeout_seconds: float = 30.0
    min_audio_bytes: int = 10 * 1024
    max_download_bytes: int = 1024 * MIB
    audio_format: str = "bestaudio/best"
    ytdlp_command: str = "yt-dlp"
    youtube_dl_command: str = "youtube-dl"
    mobile_player_clients: tuple[str, ...] = ("android", "mweb")
    feed_fallback_window: int = 5
    cancel_grace_seconds: float = 5.0

    def __post_init__(self) -> None:
        if not self.video_strategies:
            raise ValueError("video_strategies must be non-empty")
        if not self.audio_strategies:
            raise ValueError("audio_strategies must be non-empty")
        if self.download_timeout_seconds <= 0:
            raise ValueError("download_timeout_seconds must be > 0")
        if self.socket_timeout_seconds <= 0:
            raise ValueError("socket_timeout_seconds must be > 0")
        if self.min_audio_bytes < 1:
            raise ValueError("min_audio_bytes must be >= 1")
        if self.max_download_bytes < self.min_audio_bytes:
            raise ValueError("max_download_bytes must be >= min_audio_bytes")
        if self.feed_fallback_window < 1:
            raise ValueError("feed_fallback_window must be >= 1")
        if self.cancel_grace_seconds < 0:
            raise ValueError("cancel_grace_seconds must be >= 0")

    def strategies_for(self, kind: MediaKind) -> tuple[str, ...]:
        if kind == MediaKind.video:
            return self.video_strategies
        return self.audio_strategies


@runtime_checkable
class DownloadStrategy(Protocol):
    """One independent way to turn a media reference into a local audio file."""

    name: str

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool: ...

    def download(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext,
        output_stem: Path,
        cancel: CancelToken,
    ) -> Path: ...


class YtDlpLibraryStrategy:
    def __init__(
        self,
        *,
        name: str = "ytdlp_library",
        config: DownloadConfig,
        player_clients: Sequence[str] = (),
        downloader_factory: Callable[[Mapping[str, Any]], Any] = yt_dlp.YoutubeDL,
    ) -> None:
        self.name = name
        self._config = config
        self._player_clients = tuple(player_clients)
        self._downloader_factory = downloader_factory

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        if self._player_clients:
            return ref.kind == MediaKind.video
        return True

    def build_options(self, output_stem: Path, cancel: CancelToken) -> dict[str, Any]:
        def _progress_hook(_status: Mapping[str, Any]) -> None:
            cancel.raise_if_cancelled()

        opts: dict[str, Any] = {
            "format": self._config.audio_format,
            "outtmpl": f"{output_stem}.%(ext)s",
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "socket_timeout": self._config.socket_timeout_seconds,
            "progress_hooks": [_progress_hook],
        }
        if self._player_clients:
            opts["extractor_args"] = {"youtube": {"player_client": list(self._player_clients)}}
        return opts

    def download(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext,
        output_stem: Path,
        cancel: CancelToken,
    ) -> Path:
        opts = self.build_options(output_stem, cancel)

        def _run() -> None:
            with self._downloader_factory(opts) as ydl:
                ydl.extract_info(ref.canonical_url, download=True)

        try:
            call_interruptibly(
                _run,
                cancel=cancel,
                name=f"{self.name}-{ref.id}",
                grace_seconds=self._config.cancel_grace_seconds,
                on_abandon=lambda: remove_download_outputs(output_stem),
            )
        except yt_dlp.utils.DownloadError as exc:
            cancel.raise_if_cancelled()
            message = str(exc)
            raise error_for_class(classify_downloader_message(message), f"yt-dlp: {message}") from exc
        return find_download_output(output_stem)


class DownloaderCliStrategy:
    def __init__(
        self,
        *,
        name: str,
        command: str,
        config: DownloadConfig,
        runner: Callable[..., ToolResult] = run_tool,
    ) -> None:
        self.name = name
        self._command = command
        self._config = config
        self._runner = runner

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        return True

    def build_args(self, ref: MediaReference, output_stem: Path) -> tuple[str, ...]:
        return (
            self._command,
            "--format",
            self._config.audio_format,
            "--no-playlist",
            "--no-progress",
            "--socket-timeout",
            str(int(self._config.socket_timeout_seconds)),
            "--output",
            f"{output_stem}.%(ext)s",
            ref.canonical_url,
        )

    def download(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext,
        output_stem: Path,
        cancel: CancelToken,
    ) -> Path:
        try:
            self._runner(
                self.build_args(ref, output_stem),
                timeout=self._config.download_timeout_seconds,
                cancel=cancel,
            )
        except PermanentError as exc:
            if classify_downloader_message(str(exc)) == ErrorClass.not_available:
                raise NotAvailableError(str(exc)) from exc
            raise
        return find_download_output(output_stem)


class HttpEnclosureStrategy:
    """Streams a podcast enclosure (or a direct audio URL) to disk with httpx."""

    def __init__(self, *, config: DownloadConfig, client: httpx.Client, name: str = "http_enclosure") -> None:
        self.name = name
        self._config = config
        self._client = client

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        return self._source_url(ref, context) is not None

    def _source_url(self, ref: MediaReference, context: ArticleContext) -> str | None:
        if context.enclosure_url and not is_feed_url(context.enclosure_url):
            return context.enclosure_url
        if ref.kind == MediaKind.direct_audio:
            return ref.canonical_url
        return None

    def download(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext,
        output_stem: Path,
        cancel: CancelToken,
    ) -> Path:
        url = self._source_url(ref, context)
        if url is None:
            raise NotAvailableError("no enclosure URL for this media")
        return stream_audio(
            self._client,
            url,
            output_stem=output_stem,
            config=self._config,
            cancel=cancel,
            name=f"{self.name}-{ref.id}",
        )


class RssEnclosureStrategy:
    """Finds the article's episode in its podcast feed and streams that enclosure."""

    def __init__(self, *, config: DownloadConfig, client: httpx.Client, name: str = "rss_enclosure") -> None:
        self.name = name
        self._config = config
        self._client = client

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        return self._feed_url(context) is not None

    def _feed_url(self, context: ArticleContext) -> str | None:
        if context.feed_url:
            return context.feed_url
        if is_feed_url(context.enclosure_url):
            return context.enclosure_url
        return None

    def download(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext,
        output_stem: Path,
        cancel: CancelToken,
    ) -> Path:
        feed_url = self._feed_url(context)
        if feed_url is None:
            raise NotAvailableError("no podcast feed for this media")
        try:
            payload = call_interruptibly(
                lambda: fetch_feed_xml(self._client, feed_url),
                cancel=cancel,
                name=f"{self.name}-{ref.id}-feed",
            )
        except httpx.HTTPError as exc:
            raise wrap_exception(exc, context=f"GET {feed_url}") from exc

        match = match_episode(
            parse_feed_episodes(payload),
            context.title,
            fallback_window=self._config.feed_fallback_window,
        )
        logger.info("Using %s feed match %r for %s", match.match_type.value, match.episode.title, ref.id)
        return stream_audio(
            self._client,
            match.audio_url,
            output_stem=output_stem,
            config=self._config,
            cancel=cancel,
            name=f"{self.name}-{ref.id}",
        )


def stream_audio(
    client: httpx.Client,
    url: str,
    *,
    output_stem: Path,
    config: DownloadConfig,
    cancel: CancelToken,
    name: str,
) -> Path:
    """Stream ``url`` to ``output_stem`` plus an audio suffix.

    The worker removes its own partial file when it fails or is cancelled, and
    an abandoned worker removes whatever it finished writing.
    """

    def _run() -> Path:
        with client.stream("GET", url, follow_redirects=True) as response:
            if response.status_code >= 400:
                error_class = classify_status(response.status_code)
                raise error_for_class(error_class, f"GET {url} returned HTTP {response.status_code}")
            content_type = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
            if content_type.startswith("text/") or content_type in _FEED_CONTENT_TYPES:
                raise NotAvailableError(f"{url} is not audio (content-type {content_type})")
            cancel.raise_if_cancelled()
            output = output_stem.with_name(output_stem.name + _suffix_for(url, content_type))
            written = 0
            try:
                with output.open("wb") as handle:
                    for block in response.iter_bytes(_STREAM_CHUNK_BYTES):
                        cancel.raise_if_cancelled()
                        written += len(block)
                        if written > config.max_download_bytes:
                            raise PermanentError(f"download exceeds {config.max_download_bytes} bytes")
                        handle.write(block)
            except BaseException:
                output.unlink(missing_ok=True)
                raise
            return output

    try:
        return call_interruptibly(
            _run,
            cancel=cancel,
            name=name,
            grace_seconds=config.cancel_grace_seconds,
            on_abandon=lambda: remove_download_outputs(output_stem),
        )
    except httpx.HTTPError as exc:
        raise wrap_exception(exc, context=f"GET {url}") from exc


class AudioAcquirer:
    def __init__(
        self,
        *,
        temp_dir: Path,
        strategies: Sequence[DownloadStrategy],
        config: DownloadConfig | None = None,
    ) -> None:
        self._temp_dir = temp_dir
        self._config = config or DownloadConfig()
        self._strategies = {strategy.name: strategy for strategy in strategies}

    @property
    def strategy_names(self) -> tuple[str, ...]:
        return tuple(self._strategies)

    def ordered_strategies(self, ref: MediaReference, context: ArticleContext) -> list[DownloadStrategy]:
        ordered: list[DownloadStrategy] = []
        for name in self._config.strategies_for(ref.kind):
            strategy = self._strategies.get(name)
            if strategy is None:
                logger.debug("Download strategy %s is not registered; skipping", name)
                continue
            if strategy.supports(ref, context):
                ordered.append(strategy)
        return ordered

    def acquire(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext | None = None,
        cancel: CancelToken | None = None,
        trace: AcquisitionTrace | None = None,
    ) -> AudioAsset:
        """Download audio for ``ref``, trying each strategy once in order.

        The returned asset is owned by the caller and must be released.
        """
        context = context or ArticleContext()
        token = cancel or CancelToken()
        trace = trace if trace is not None else AcquisitionTrace()
        self._temp_dir.mkdir(parents=True, exist_ok=True)

        candidates = [
            (strategy.name, self._attempt_factory(strategy, ref, context, token))
            for strategy in self.ordered_strategies(ref, context)
        ]
        outcome = first_success(candidates, stage=Stage.download, trace=trace, cancel=token)
        if isinstance(outcome, Success):
            return outcome.value
        if not candidates:
            raise AcquisitionFailedError(f"No download strategy supports {ref.kind.value} media", trace=trace)
        raise AcquisitionFailedError(
            f"All {len(candidates)} download strategies failed for {ref.id}",
            trace=trace,
        )

    def _attempt_factory(
        self,
        strategy: DownloadStrategy,
        ref: MediaReference,
        context: ArticleContext,
        cancel: CancelToken,
    ) -> Callable[[], AudioAsset]:
        def _attempt() -> AudioAsset:
            output_stem = self._temp_dir / temp_stem(media_id=ref.id, label=strategy.name)
            step = cancel.bounded(self._config.download_timeout_seconds)
            try:
                path = strategy.download(ref, context=context, output_stem=output_stem, cancel=step)
                return self._verify(path, strategy.name)
            except BaseException:
                remove_download_outputs(output_stem)
                raise

        return _attempt

    def _verify(self, path: Path, strategy_name: str) -> AudioAsset:
        if not path.exists():
            raise NotAvailableError(f"{strategy_name} reported success but produced no file")
        size = path.stat().st_size
        if size < self._config.min_audio_bytes:
            raise NotAvailableError(f"{strategy_name} produced a near-empty file ({size} bytes)")
        return AudioAsset(local_path=path, size_bytes=size, source_strategy=strategy_name)


def build_default_strategies(
    *,
    config: DownloadConfig,
    client: httpx.Client,
    runner: Callable[..., ToolResult] = run_tool,
) -> list[DownloadStrategy]:
    return [
        YtDlpLibraryStrategy(config=config),
        DownloaderCliStrategy(name="ytdlp_cli", command=config.ytdlp_command, config=config, runner=runner),
        YtDlpLibraryStrategy(
            name="ytdlp_mobile_clients",
            config=config,
            player_clients=config.mobile_player_clients,
        ),
        DownloaderCliStrategy(
            name="youtube_dl_cli",
            command=config.youtube_dl_command,
            config=config,
            runner=runner,
        ),
        HttpEnclosureStrategy(config=config, client=client),
        RssEnclosureStrategy(config=config, client=client),
    ]


def classify_downloader_message(message: str) -> ErrorClass:
    lowered = message.lower()
    if any(marker in lowered for marker in _NOT_AVAILABLE_MARKERS):
        return ErrorClass.not_available
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return ErrorClass.transient
    return ErrorClass.permanent


def find_download_output(output_stem: Path) -> Path:
    candidates = [
        path
        for path in output_stem.parent.glob(f"{output_stem.name}.*")
        if path.is_file() and path.suffix.lower() not in _PARTIAL_SUFFIXES
    ]
    if not candidates:
        raise NotAvailableError(f"downloader produced no output for {output_stem.name}")
    return max(candidates, key=lambda path: path.stat().st_size)


def remove_download_outputs(output_stem: Path) -> None:
    for path in output_stem.parent.glob(f"{output_stem.name}*"):
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not delete partial download %s: %s", path, exc)


def _suffix_for(url: str, content_type: str) -> str:
    suffix = Path(urlsplit(url).path).suffix.lower()
    if suffix in SUPPORTED_AUDIO_EXTENSIONS:
        return suffix
    return _CONTENT_TYPE_SUFFIXES.get(content_type, ".mp3")
