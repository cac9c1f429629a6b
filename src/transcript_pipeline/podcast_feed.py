from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import urlsplit
from xml.etree import ElementTree

import httpx

from transcript_pipeline.errors import NotAvailableError, classify_status, error_for_class
from transcript_pipeline.temp_files import SUPPORTED_AUDIO_EXTENSIONS

_FEED_URL_MARKERS: tuple[str, ...] = (
    "/rss",
    "/feed",
    "rss.xml",
    "feed.xml",
    "podcast/rss",
    "feeds.",
    "anchor.fm/s/",
)

_BRACKETS_RE = re.compile(r"[\[\]【】()（）〈〉]")
_PIPES_RE = re.compile(r"[|｜]")
_SPACE_RE = re.compile(r"\s+")
_EPISODE_NUMBER_RE = re.compile(r"[#＃]\d+[-‐]\d+")
_DASH_RE = re.compile(r"\s*[-‐]\s*")


class MatchType(StrEnum):
    exact = "exact"
    partial = "partial"
    latest = "latest"


@dataclass(frozen=True)
class FeedEpisode:
    title: str
    audio_url: str | None
    published: str | None = None


@dataclass(frozen=True)
class EpisodeMatch:
    episode: FeedEpisode
    match_type: MatchType

    @property
    def audio_url(self) -> str:
        if self.episode.audio_url is None:
            raise NotAvailableError(f"feed episode {self.episode.title!r} has no audio enclosure")
        return self.episode.audio_url


def is_feed_url(url: str | None) -> bool:
    if not url:
        return False
    lowered = url.lower()
    return any(marker in lowered for marker in _FEED_URL_MARKERS)


def fetch_feed_xml(client: httpx.Client, feed_url: str) -> str:
    response = client.get(feed_url, follow_redirects=True)
    if response.status_code >= 400:
        error_class = classify_status(response.status_code)
        raise error_for_class(error_class, f"feed {feed_url} returned HTTP {response.status_code}")
    return response.text


def parse_feed_episodes(xml_payload: str) -> list[FeedEpisode]:
    """Parse RSS 2.0 items, newest first as published by the feed."""
    try:
        root = ElementTree.fromstring(xml_payload)
    except ElementTree.ParseError as exc:
        raise NotAvailableError("podcast feed returned invalid XML") from exc

    channel = _find_channel(root)
    if channel is None:
        raise NotAvailableError("podcast feed has no channel element")

    episodes: list[FeedEpisode] = []
    for item in channel:
        if _strip_namespace(item.tag) != "item":
            continue
        episodes.append(
            FeedEpisode(
                title=_first_text(item, ("title",)) or "",
                audio_url=_audio_url(item),
                published=_first_text(item, ("pubDate", "published", "date")),
            ),
        )
    if not episodes:
        raise NotAvailableError("podcast feed has no episodes")
    return episodes


def clean_title(title: str | None) -> str:
    if not title:
        return ""
    value = title.lower()
    value = _BRACKETS_RE.sub("", value)
    value = _PIPES_RE.sub("", value)
    value = _SPACE_RE.sub(" ", value)
    value = _EPISODE_NUMBER_RE.sub("", value)
    value = _DASH_RE.sub(" ", value)
    return value.strip()


def match_episode(
    episodes: Sequence[FeedEpisode],
    title: str | None,
    *,
    fallback_window: int = 5,
) -> EpisodeMatch:
    """Pick the episode for an article title: exact, then partial, then latest with audio."""
    playable = [episode for episode in episodes if episode.audio_url]
    if title:
        for episode in playable:
            if episode.title == title:
                return EpisodeMatch(episode=episode, match_type=MatchType.exact)
        wanted = clean_title(title)
        if wanted:
            for episode in playable:
                candidate = clean_title(episode.title)
                if candidate and (wanted in candidate or candidate in wanted):
                    return EpisodeMatch(episode=episode, match_type=MatchType.partial)

    for episode in episodes[:fallback_window]:
        if episode.audio_url:
            return EpisodeMatch(episode=episode, match_type=MatchType.latest)
    raise NotAvailableError(f"none of the latest {fallback_window} feed episodes has audio")


def _find_channel(root: ElementTree.Element) -> ElementTree.Element | None:
    if _strip_namespace(root.tag) == "channel":
        return root
    for child in root:
        if _strip_namespace(child.tag) == "channel":
            return child
    return None


def _first_text(item: ElementTree.Element, tags: Sequence[str]) -> str | None:
    for child in item:
        if _strip_namespace(child.tag) in tags:
            text = "".join(child.itertext()).strip()
            if text:
                return text
    return None


def _audio_url(item: ElementTree.Element) -> str | None:
    for child in item:
        if _strip_namespace(child.tag) not in {"enclosure", "content"}:
            continue
        url = (child.get("url") or "").strip()
        if url and _is_audio(url, child.get("type") or "", child.get("medium") or ""):
            return url
    return None


def _is_audio(url: str, content_type: str, medium: str) -> bool:
    if content_type.lower().startswith("audio/") or medium.lower() == "audio":
        return True
    suffix = urlsplit(url).path.lower().rsplit("/", 1)[-1]
    return any(suffix.endswith(ext) for ext in SUPPORTED_AUDIO_EXTENSIONS)


def _strip_namespace(tag: str) -> str:
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag
