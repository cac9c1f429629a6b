from __future__ import annotations

import httpx
import pytest

from transcript_pipeline.errors import NotAvailableError, TransientError
from transcript_pipeline.podcast_feed import (
    FeedEpisode,
    MatchType,
    clean_title,
    fetch_feed_xml,
    is_feed_url,
    match_episode,
    parse_feed_episodes,
)

_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <item>
      <title>Trailer</title>
      <enclosure url="https://cdn.example.com/trailer.jpg" type="image/jpeg" length="1"/>
    </item>
    <item>
      <title>Episode two</title>
      <pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate>
      <media:content url="https://cdn.example.com/two.m4a" medium="audio"/>
    </item>
    <item>
      <title>Episode one</title>
      <enclosure url="https://cdn.example.com/one" type="audio/mpeg" length="1"/>
    </item>
  </channel>
</rss>
"""


def test_parse_feed_episodes_reads_audio_enclosures() -> None:
    episodes = parse_feed_episodes(_FEED)

    assert episodes == [
        FeedEpisode(title="Trailer", audio_url=None),
        FeedEpisode(
            title="Episode two",
            audio_url="https://cdn.example.com/two.m4a",
            published="Tue, 02 Jan 2024 10:00:00 GMT",
        ),
        FeedEpisode(title="Episode one", audio_url="https://cdn.example.com/one"),
    ]


@pytest.mark.parametrize(
    "payload",
    [
        "not xml at all <",
        "<feed><entry/></feed>",
        "<rss><channel><title>Empty</title></channel></rss>",
    ],
)
def test_parse_feed_episodes_rejects_unusable_feeds(payload: str) -> None:
    with pytest.raises(NotAvailableError):
        parse_feed_episodes(payload)


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("【Special】 Show | Part #23-4 - Finale", "special show part finale"),
        ("  Plain   Title ", "plain title"),
        (None, ""),
    ],
)
def test_clean_title(title: str | None, expected: str) -> None:
    assert clean_title(title) == expected


def test_match_prefers_exact_over_partial() -> None:
    episodes = [
        FeedEpisode(title="Episode one bonus", audio_url="https://cdn.example.com/bonus.mp3"),
        FeedEpisode(title="Episode one", audio_url="https://cdn.example.com/one.mp3"),
    ]

    match = match_episode(episodes, "Episode one")

    assert match.match_type == MatchType.exact
    assert match.audio_url == "https://cdn.example.com/one.mp3"


def test_match_uses_first_partial_match() -> None:
    episodes = parse_feed_episodes(_FEED)

    match = match_episode(episodes, "EPISODE ONE (re-upload)")

    assert match.match_type == MatchType.partial
    assert match.episode.title == "Episode one"


def test_match_falls_back_to_latest_episode_with_audio() -> None:
    match = match_episode(parse_feed_episodes(_FEED), "Unrelated article")

    assert match.match_type == MatchType.latest
    assert match.episode.title == "Episode two"


def test_match_skips_episodes_without_audio_for_title_matches() -> None:
    match = match_episode(parse_feed_episodes(_FEED), "Trailer")

    assert match.match_type == MatchType.latest
    assert match.episode.title == "Episode two"


def test_match_fails_when_no_recent_episode_has_audio() -> None:
    episodes = [FeedEpisode(title=f"Episode {n}", audio_url=None) for n in range(3)]
    episodes.append(FeedEpisode(title="Old", audio_url="https://cdn.example.com/old.mp3"))

    with pytest.raises(NotAvailableError):
        match_episode(episodes, None, fallback_window=3)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://feeds.example.com/show", True),
        ("https://example.com/podcast/rss", True),
        ("https://anchor.fm/s/abc123/podcast/rss", True),
        ("https://example.com/show/feed.xml", True),
        ("https://cdn.example.com/ep1.mp3", False),
        (None, False),
    ],
)
def test_is_feed_url(url: str | None, expected: bool) -> None:
    assert is_feed_url(url) is expected


def test_fetch_feed_xml_classifies_status() -> None:
    ok = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, text=_FEED)))
    busy = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))

    assert fetch_feed_xml(ok, "https://feeds.example.com/show") == _FEED
    with pytest.raises(TransientError, match="HTTP 503"):
        fetch_feed_xml(busy, "https://feeds.example.com/show")
