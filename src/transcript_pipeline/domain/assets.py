from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Self

logger = logging.getLogger(__name__)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not delete temporary file %s: %s", path, exc)


@dataclass(frozen=True)
class AudioAsset:
    """A local audio file owned by whoever holds this handle.

    ``release()`` deletes the file; it is safe to call more than once and is
    invoked automatically when the handle is used as a context manager.
    """

    local_path: Path
    size_bytes: int
    source_strategy: str
    approximate: bool = False

    def __post_init__(self) -> None:
        if self.size_bytes < 0:
            raise ValueError("size_bytes must be >= 0")

    @classmethod
    def from_path(cls, path: Path, *, source_strategy: str, approximate: bool = False) -> AudioAsset:
        return cls(
            local_path=path,
            size_bytes=path.stat().st_size,
            source_strategy=source_strategy,
            approximate=approximate,
        )

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)

    @property
    def exists(self) -> bool:
        return self.local_path.exists()

    def release(self) -> None:
        _unlink_quietly(self.local_path)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.release()


@dataclass(frozen=True)
class AudioChunk:
    local_path: Path
    size_bytes: int
    start_offset_minutes: int
    ordinal: int
    approximate: bool = False

    def __post_init__(self) -> None:
        if self.ordinal < 1:
            raise ValueError("ordinal must be >= 1")
        if self.start_offset_minutes < 0:
            raise ValueError("start_offset_minutes must be >= 0")

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)

    def release(self) -> None:
        _unlink_quietly(self.local_path)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.release()
