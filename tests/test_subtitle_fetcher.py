from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from youtube_transcript_api._errors import RequestBlocked, TranscriptsDisabled

from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.domain.models import (
    AcquisitionTrace,
    ErrorClass,
    MediaKind,
    MediaReference,
    TranscriptMethod,
)
from transcript_pipeline.errors import NotAvailableError, RunCancelledError, TransientError
from transcript_pipeline.subtitle_fetcher import SubtitleConfig, SubtitleFetcher, YouTubeCaptionProvider

from .fakes import FakeCache, FakeCaptionProvider

VIDEO = MediaReference(
    id="dQw4w9WgXcQ",
    kind=MediaKind.video,
    canonical_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
)
EPISODE = MediaReference(id="spotify-abc", kind=MediaKind.episode, canonical_url="https://open.spotify.com/episode/abc")


def test_first_language_with_captions_wins() -> None:
    provider = FakeCaptionProvider({"en": NotAvailableError("none"), "ja": "konnichiwa sekai"})
    fetcher = SubtitleFetcher(provider=provider)
    trace = AcquisitionTrace()

    result = fetcher.fetch_subtitles(VIDEO, trace=trace)

    assert result.text == "konnichiwa sekai"
    assert result.method == TranscriptMethod.subtitle
    assert result.language == "ja"
    assert result.strategy_name == "fake_captions:ja"
    assert provider.calls == ["en", "ja"]
    assert [(a.strategy_name, a.error_class) for a in trace] == [
        ("fake_captions:en", ErrorClass.not_available),
        ("fake_captions:ja", ErrorClass.none),
    ]


def test_blank_captions_count_as_not_available() -> None:
    provider = FakeCaptionProvider({"en": "   ", "ja": "", "en-US": ""})
    fetcher = SubtitleFetcher(provider=provider)
    trace = AcquisitionTrace()

    with pytest.raises(NotAvailableError):
        fetcher.fetch_subtitles(VIDEO, trace=trace)

    assert len(trace) == 3
    assert {attempt.error_class for attempt in trace} == {ErrorClass.not_available}


def test_transient_provider_errors_are_traced_but_surface_as_not_available() -> None:
    provider = FakeCaptionProvider({"en": TransientError("blocked"), "ja": TransientError("blocked")})
    fetcher = SubtitleFetcher(provider=provider, config=SubtitleConfig(languages=("en", "ja")))
    trace = AcquisitionTrace()

    with pytest.raises(NotAvailableError):
        fetcher.fetch_subtitles(VIDEO, trace=trace)

    assert [attempt.error_class for attempt in trace] == [ErrorClass.transient, ErrorClass.transient]


def test_non_video_reference_is_not_available_without_calling_provider() -> None:
    provider = FakeCaptionProvider({"en": "should not be used"})
    fetcher = SubtitleFetcher(provider=provider)
    trace = AcquisitionTrace()

    with pytest.raises(NotAvailableError):
        fetcher.fetch_subtitles(EPISODE, trace=trace)

    assert provider.calls == []
    assert len(trace) == 1
    assert trace.attempts[0].error_class == ErrorClass.not_available


def test_cache_hit_skips_provider() -> None:
    provider = FakeCaptionProvider({"en": "fresh"})
    cache = FakeCache({VIDEO.id: "cached text"})
    fetcher = SubtitleFetcher(provider=provider, cache=cache)
    trace = AcquisitionTrace()

    result = fetcher.fetch_subtitles(VIDEO, trace=trace)

    assert result.text == "cached text"
    assert result.strategy_name == "cache"
    assert provider.calls == []
    assert [attempt.strategy_name for attempt in trace] == ["cache"]


def test_fresh_subtitles_are_written_to_cache() -> None:
    cache = FakeCache()
    fetcher = SubtitleFetcher(provider=FakeCaptionProvider({"en": " hello  "}), cache=cache)

    fetcher.fetch_subtitles(VIDEO)

    assert cache.reads == [VIDEO.id]
    assert cache.writes == [(VIDEO.id, "hello")]


def test_cache_disabled_by_config() -> None:
    cache = FakeCache({VIDEO.id: "cached text"})
    fetcher = SubtitleFetcher(
        provider=FakeCaptionProvider({"en": "fresh"}),
        cache=cache,
        config=SubtitleConfig(use_cache=False),
    )

    assert fetcher.fetch_subtitles(VIDEO).text == "fresh"
    assert cache.reads == []
    assert cache.writes == []


class _BrokenCache:
    def get_cached_transcript(self, media_id: str) -> str | None:
        raise OSError("disk gone")

    def put_cached_transcript(self, media_id: str, text: str) -> None:
        raise OSError("disk gone")


def test_cache_errors_do_not_fail_the_fetch() -> None:
    fetcher = SubtitleFetcher(provider=FakeCaptionProvider({"en": "fresh"}), cache=_BrokenCache())

    assert fetcher.fetch_subtitles(VIDEO).text == "fresh"


def test_cancelled_token_propagates() -> None:
    token = CancelToken()
    token.cancel()
    fetcher = SubtitleFetcher(provider=FakeCaptionProvider({"en": "fresh"}))

    with pytest.raises(RunCancelledError):
        fetcher.fetch_subtitles(VIDEO, cancel=token)


class _FakeTranscriptApi:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome
        self.requests: list[tuple[str, list[str]]] = []

    def fetch(self, video_id: str, languages: list[str]) -> Any:
        self.requests.append((video_id, languages))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_youtube_provider_joins_snippets() -> None:
    snippets = [SimpleNamespace(text="hello"), SimpleNamespace(text="  wide\nworld ")]
    api = _FakeTranscriptApi(snippets)
    provider = YouTubeCaptionProvider(api=api)

    assert provider.fetch("abc", language="en", cancel=CancelToken()) == "hello wide world"
    assert api.requests == [("abc", ["en"])]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TranscriptsDisabled("abc"), NotAvailableError),
        (RequestBlocked("abc"), TransientError),
        (ConnectionResetError("reset"), TransientError),
    ],
)
def test_youtube_provider_classifies_errors(error: Exception, expected: type[Exception]) -> None:
    provider = YouTubeCaptionProvider(api=_FakeTranscriptApi(error))

    with pytest.raises(expected):
        provider.fetch("abc", language="en", cancel=CancelToken())


def test_config_rejects_empty_languages() -> None:
    with pytest.raises(ValueError):
        SubtitleConfig(languages=())
