from __future__ import annotations

import hashlib
import re
from urllib.parse import parse_qs, urlsplit, urlunsplit

from transcript_pipeline.domain.models import MediaKind, MediaReference
from transcript_pipeline.errors import InvalidReferenceError
from transcript_pipeline.temp_files import SUPPORTED_AUDIO_EXTENSIONS

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_YOUTUBE_HOSTS = frozenset(
    {
        "youtube.com",
        "www.youtube.com",
        "m.youtube.com",
        "music.youtube.com",
        "youtube-nocookie.com",
        "www.youtube-nocookie.com",
    },
)
_SHORT_HOSTS = frozenset({"youtu.be", "www.youtu.be"})
_PATH_PREFIXES = ("embed", "shorts", "live", "v", "e")

_SPOTIFY_EPISODE_RE = re.compile(r"^/(?:intl-[a-z]{2}/)?episode/([A-Za-z0-9]+)/?$")
_APPLE_PODCAST_RE = re.compile(r"^/(?:[a-z]{2}/)?podcast/(?:[^/]+/)?id(\d+)/?$")
_ANCHOR_EPISODE_RE = re.compile(r"^/([^/]+)/episodes/([^/?#]+)/?$")


def identify(url: str) -> MediaReference:
    """Normalize ``url`` into a ``MediaReference``.

    Equivalent URL forms (short link, watch link, embed, shorts, mobile host)
    map to the same id so they share a cache key.
    """
    raw = (url or "").strip()
    if not raw:
        raise InvalidReferenceError("URL must be non-empty")
    if "://" not in raw and _looks_like_host(raw):
        raw = f"https://{raw}"

    parts = urlsplit(raw)
    if parts.scheme.lower() not in {"http", "https"}:
        raise InvalidReferenceError(f"Unsupported URL scheme: {url}")
    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidReferenceError(f"URL has no host: {url}")

    video_id = _youtube_video_id(host, parts.path, parts.query)
    if video_id is not None:
        return MediaReference(
            id=video_id,
            kind=MediaKind.video,
            canonical_url=f"https://www.youtube.com/watch?v={video_id}",
        )

    episode = _episode_reference(host, parts.path, parts.query)
    if episode is not None:
        return episode

    if _has_audio_extension(parts.path):
        normalized = normalize_url(raw)
        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return MediaReference(id=f"audio-{digest}", kind=MediaKind.direct_audio, canonical_url=normalized)

    raise InvalidReferenceError(f"Unrecognized media URL: {url}")


def normalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    netloc = host if parts.port is None else f"{host}:{parts.port}"
    return urlunsplit((parts.scheme.lower(), netloc, parts.path or "/", parts.query, ""))


def _looks_like_host(value: str) -> bool:
    head = value.split("/", 1)[0].lower()
    return head in _YOUTUBE_HOSTS or head in _SHORT_HOSTS or head.endswith(".youtube.com")


def _youtube_video_id(host: str, path: str, query: str) -> str | None:
    if host in _SHORT_HOSTS:
        return _valid_id(path.strip("/").split("/", 1)[0])
    if host not in _YOUTUBE_HOSTS:
        return None

    segments = [segment for segment in path.split("/") if segment]
    if segments and segments[0] == "watch":
        values = parse_qs(query).get("v")
        return _valid_id(values[0]) if values else None
    if len(segments) >= 2 and segments[0] in _PATH_PREFIXES:
        return _valid_id(segments[1])
    return None


def _valid_id(candidate: str) -> str | None:
    if _VIDEO_ID_RE.fullmatch(candidate):
        return candidate
    return None


def _episode_reference(host: str, path: str, query: str) -> MediaReference | None:
    if host == "open.spotify.com":
        match = _SPOTIFY_EPISODE_RE.match(path)
        if match is None:
            return None
        episode_id = match.group(1)
        return MediaReference(
            id=f"spotify-{episode_id}",
            kind=MediaKind.episode,
            canonical_url=f"https://open.spotify.com/episode/{episode_id}",
        )

    if host == "podcasts.apple.com":
        match = _APPLE_PODCAST_RE.match(path)
        episode_values = parse_qs(query).get("i")
        if match is None or not episode_values or not episode_values[0].isdigit():
            return None
        episode_id = episode_values[0]
        return MediaReference(
            id=f"apple-{episode_id}",
            kind=MediaKind.episode,
            canonical_url=f"https://podcasts.apple.com{path.rstrip('/')}?i={episode_id}",
        )

    if host in {"anchor.fm", "www.anchor.fm", "podcasters.spotify.com"}:
        match = _ANCHOR_EPISODE_RE.match(path.removeprefix("/pod/show"))
        if match is None:
            return None
        show, slug = match.group(1), match.group(2)
        return MediaReference(
            id=f"anchor-{show}-{slug}",
            kind=MediaKind.episode,
            canonical_url=f"https://anchor.fm/{show}/episodes/{slug}",
        )
    return None


def _has_audio_extension(path: str) -> bool:
    lowered = path.lower()
    return any(lowered.endswith(ext) for ext in SUPPORTED_AUDIO_EXTENSIONS)
