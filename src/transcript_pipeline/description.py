from __future__ import annotations

import html
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
import yt_dlp

from transcript_pipeline.audio_acquirer import classify_downloader_message
from transcript_pipeline.cancellation import CancelToken, call_interruptibly
from transcript_pipeline.domain.models import (
    AcquisitionTrace,
    ArticleContext,
    MediaKind,
    MediaReference,
    Stage,
    TranscriptMethod,
    TranscriptResult,
)
from transcript_pipeline.errors import (
    NotAvailableError,
    PermanentError,
    TransientError,
    classify_status,
    error_for_class,
)
from transcript_pipeline.strategies import Success, first_success

YOUTUBE_DATA_API_URL = "https://www.googleapis.com/youtube/v3"
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class DescriptionConfig:
    use_data_api: bool = True
    use_ytdlp_metadata: bool = True
    use_article_context: bool = True
    min_description_chars: int = 50
    max_description_chars: int = 1000
    max_tags: int = 10

    def __post_init__(self) -> None:
        if self.min_description_chars < 0:
            raise ValueError("min_description_chars must be >= 0")
        if self.max_description_chars < 1:
            raise ValueError("max_description_chars must be >= 1")
        if self.max_tags < 0:
            raise ValueError("max_tags must be >= 0")


@runtime_checkable
class DescriptionSource(Protocol):
    name: str

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool: ...

    def describe(self, ref: MediaReference, *, context: ArticleContext, cancel: CancelToken) -> str: ...


class YouTubeDataApiSource:
    name = "youtube_data_api"

    def __init__(
        self,
        *,
        api_key: str | None,
        client: httpx.Client,
        base_url: str = YOUTUBE_DATA_API_URL,
        max_description_chars: int = 1000,
        max_tags: int = 10,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._max_description_chars = max_description_chars
        self._max_tags = max_tags

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        return ref.kind == MediaKind.video and bool(self._api_key)

    def describe(self, ref: MediaReference, *, context: ArticleContext, cancel: CancelToken) -> str:
        params = {
            "part": "snippet,contentDetails,statistics",
            "id": ref.id,
            "key": self._api_key or "",
        }
        url = f"{self._base_url}/videos"
        try:
            response = call_interruptibly(
                lambda: self._client.get(url, params=params),
                cancel=cancel,
                name=f"{self.name}-{ref.id}",
            )
        except httpx.TimeoutException as exc:
            raise TransientError("YouTube Data API request timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"YouTube Data API request failed: {exc}") from exc

        if response.status_code == 403:
            raise PermanentError("YouTube Data API quota exceeded or access denied (HTTP 403)")
        if response.status_code >= 400:
            raise error_for_class(
                classify_status(response.status_code),
                f"YouTube Data API returned HTTP {response.status_code}",
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentError("YouTube Data API returned invalid JSON") from exc
        items = payload.get("items") if isinstance(payload, dict) else None
        if not items:
            raise NotAvailableError(f"video {ref.id} not found")
        return self._format(items[0])

    def _format(self, item: Mapping[str, Any]) -> str:
        snippet = item.get("snippet") or {}
        statistics = item.get("statistics") or {}
        description = str(snippet.get("description") or "").strip()
        if not description:
            raise NotAvailableError("video has no description")

        lines = [f"Title: {snippet.get('title', '')}"]
        if snippet.get("channelTitle"):
            lines.append(f"Channel: {snippet['channelTitle']}")
        lines.append(f"Description: {description[: self._max_description_chars]}")
        tags = [str(tag) for tag in snippet.get("tags") or []][: self._max_tags]
        if tags:
            lines.append(f"Tags: {', '.join(tags)}")
        if statistics.get("viewCount"):
            lines.append(f"Views: {statistics['viewCount']}")
        return "\n".join(lines)


class YtDlpMetadataSource:
    name = "ytdlp_metadata"

    def __init__(
        self,
        *,
        min_description_chars: int = 50,
        socket_timeout_seconds: float = 30.0,
        downloader_factory: Callable[[Mapping[str, Any]], Any] = yt_dlp.YoutubeDL,
    ) -> None:
        self._min_description_chars = min_description_chars
        self._socket_timeout_seconds = socket_timeout_seconds
        self._downloader_factory = downloader_factory

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        return ref.kind != MediaKind.direct_audio

    def describe(self, ref: MediaReference, *, context: ArticleContext, cancel: CancelToken) -> str:
        opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "socket_timeout": self._socket_timeout_seconds,
        }

        def _extract() -> Any:
            with self._downloader_factory(opts) as ydl:
                return ydl.extract_info(ref.canonical_url, download=False)

        try:
            info = call_interruptibly(_extract, cancel=cancel, name=f"{self.name}-{ref.id}")
        except yt_dlp.utils.DownloadError as exc:
            message = str(exc)
            raise error_for_class(classify_downloader_message(message), f"yt-dlp: {message}") from exc

        info = info if isinstance(info, Mapping) else {}
        description = str(info.get("description") or "").strip()
        if len(description) <= self._min_description_chars:
            raise NotAvailableError(f"description shorter than {self._min_description_chars} characters")
        title = str(info.get("title") or "").strip()
        return f"Title: {title}\nDescription: {description}" if title else description


class ContextDescriptionSource:
    """Falls back to the description the feed store already holds for the article."""

    name = "article_context"

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        return bool(context.description and context.description.strip())

    def describe(self, ref: MediaReference, *, context: ArticleContext, cancel: CancelToken) -> str:
        text = strip_markup(context.description or "")
        if not text:
            raise NotAvailableError("article description is empty")
        if context.title and context.title.strip():
            return f"Title: {context.title.strip()}\nDescription: {text}"
        return text


class DescriptionResolver:
    def __init__(self, sources: Sequence[DescriptionSource]) -> None:
        self._sources = tuple(sources)

    def describe(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext | None = None,
        cancel: CancelToken | None = None,
        trace: AcquisitionTrace | None = None,
    ) -> TranscriptResult:
        context = context or ArticleContext()
        token = cancel or CancelToken()
        trace = trace if trace is not None else AcquisitionTrace()
        candidates = [
            (source.name, self._attempt(source, ref, context, token))
            for source in self._sources
            if source.supports(ref, context)
        ]
        outcome = first_success(candidates, stage=Stage.description, trace=trace, cancel=token)
        if not isinstance(outcome, Success):
            raise NotAvailableError(f"no description available for {ref.id}")
        return TranscriptResult(
            text=outcome.value,
            method=TranscriptMethod.description,
            media_id=ref.id,
            strategy_name=outcome.strategy_name,
        )

    @staticmethod
    def _attempt(
        source: DescriptionSource,
        ref: MediaReference,
        context: ArticleContext,
        cancel: CancelToken,
    ) -> Callable[[], str]:
        def _run() -> str:
            text = source.describe(ref, context=context, cancel=cancel).strip()
            if not text:
                raise NotAvailableError(f"{source.name} returned an empty description")
            return text

        return _run


def strip_markup(value: str) -> str:
    text = _TAG_RE.sub(" ", value.replace("<br>", "\n").replace("<br/>", "\n").replace("</p>", "\n"))
    text = html.unescape(text)
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()
