from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.domain.models import ArticleContext, MediaReference

MIB = 1024 * 1024


def write_audio(path: Path, size_bytes: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as handle:
        remaining = size_bytes
        block = b"\x00" * (64 * 1024)
        while remaining > 0:
            step = min(len(block), remaining)
            handle.write(block[:step])
            remaining -= step
    return path


def no_ffmpeg(_command: str) -> bool:
    return False


@dataclass
class RecordingSleep:
    delays: list[float] = field(default_factory=list)

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass
class UploadCall:
    path: Path
    size_bytes: int
    existed: bool
    language: str | None


class FakeBackend:
    """Speech-to-text backend returning scripted outcomes in order."""

    def __init__(self, name: str, outcomes: Iterable[str | Exception]) -> None:
        self.name = name
        self._outcomes = list(outcomes)
        self.calls: list[UploadCall] = []

    def transcribe_file(self, path: Path, *, language: str | None, cancel: CancelToken) -> str:
        self.calls.append(
            UploadCall(
                path=path,
                size_bytes=path.stat().st_size if path.exists() else -1,
                existed=path.exists(),
                language=language,
            ),
        )
        if not self._outcomes:
            raise AssertionError(f"{self.name} called more often than scripted")
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeDownloadStrategy:
    def __init__(
        self,
        name: str,
        *,
        size_bytes: int = 64 * 1024,
        error: Exception | None = None,
        suffix: str = ".mp3",
        kinds: tuple[str, ...] = ("video", "episode", "direct_audio"),
    ) -> None:
        self.name = name
        self._size_bytes = size_bytes
        self._error = error
        self._suffix = suffix
        self._kinds = kinds
        self.calls = 0
        self.produced: list[Path] = []

    def supports(self, ref: MediaReference, context: ArticleContext) -> bool:
        return ref.kind.value in self._kinds

    def download(
        self,
        ref: MediaReference,
        *,
        context: ArticleContext,
        output_stem: Path,
        cancel: CancelToken,
    ) -> Path:
        self.calls += 1
        path = output_stem.with_name(output_stem.name + self._suffix)
        if self._size_bytes:
            write_audio(path, self._size_bytes)
        else:
            path.write_bytes(b"")
        self.produced.append(path)
        if self._error is not None:
            raise self._error
        return path


class FakeCaptionProvider:
    name = "fake_captions"

    def __init__(self, responses: dict[str, str | Exception] | None = None) -> None:
        self._responses = responses or {}
        self.calls: list[str] = []

    def fetch(self, video_id: str, *, language: str, cancel: CancelToken) -> str:
        self.calls.append(language)
        outcome = self._responses.get(language, "")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeCache:
    def __init__(self, entries: dict[str, str] | None = None) -> None:
        self.entries = dict(entries or {})
        self.reads: list[str] = []
        self.writes: list[tuple[str, str]] = []

    def get_cached_transcript(self, media_id: str) -> str | None:
        self.reads.append(media_id)
        return self.entries.get(media_id)

    def put_cached_transcript(self, media_id: str, text: str) -> None:
        self.writes.append((media_id, text))
        self.entries[media_id] = text


class FakeYoutubeDL:
    """Stands in for ``yt_dlp.YoutubeDL``; writes a file matching ``outtmpl``."""

    def __init__(
        self,
        opts: dict[str, object],
        *,
        size_bytes: int = 64 * 1024,
        info: dict[str, object] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.opts = opts
        self._size_bytes = size_bytes
        self._info = info or {"id": "abc"}
        self._error = error
        self.extracted: list[tuple[str, bool]] = []

    def __enter__(self) -> FakeYoutubeDL:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        return None

    def extract_info(self, url: str, download: bool = True) -> dict[str, object]:
        self.extracted.append((url, download))
        if self._error is not None:
            raise self._error
        if download:
            template = str(self.opts["outtmpl"])
            write_audio(Path(template.replace("%(ext)s", "webm")), self._size_bytes)
        return self._info


def listing(directory: Path) -> list[str]:
    if not directory.exists():
        return []
    return sorted(path.name for path in directory.iterdir())
