from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.domain.assets import AudioAsset, AudioChunk
from transcript_pipeline.errors import PermanentError, RunCancelledError, TransientError
from transcript_pipeline.temp_files import temp_path
from transcript_pipeline.tools import ToolResult, run_tool, tool_available

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
_COPY_BLOCK_BYTES = 1024 * 1024

ToolRunner = Callable[..., ToolResult]


@dataclass(frozen=True)
class AudioChunkerConfig:
    ffmpeg_command: str = "ffmpeg"
    ffmpeg_timeout_seconds: float = 30.0
    prefer_precise: bool = True
    # Empirical estimate with no codec awareness; only used when ffmpeg is unavailable.
    minutes_per_mb: float = 1.5
    min_estimated_minutes: float = 30.0
    precise_min_bytes: int = int(0.01 * MIB)
    approximate_min_bytes: int = 100 * 1024
    stop_below_bytes: int = int(0.1 * MIB)
    max_prefix_bytes: int = 20 * MIB

    def __post_init__(self) -> None:
        if not self.ffmpeg_command.strip():
            raise ValueError("ffmpeg_command must be non-empty")
        if self.ffmpeg_timeout_seconds <= 0:
            raise ValueError("ffmpeg_timeout_seconds must be > 0")
        if self.minutes_per_mb <= 0:
            raise ValueError("minutes_per_mb must be > 0")
        if self.min_estimated_minutes < 0:
            raise ValueError("min_estimated_minutes must be >= 0")
        for name in ("precise_min_bytes", "approximate_min_bytes", "stop_below_bytes"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_prefix_bytes < 1:
            raise ValueError("max_prefix_bytes must be >= 1")


class ChunkSequence:
    """Lazy, finite sequence of chunks cut from one source file.

    Each iteration re-derives chunks from the source. ``truncated`` is set when
    iteration stopped before the end of the audio: ``max_chunks`` was reached
    or ffmpeg failed to cut a later chunk.
    """

    def __init__(
        self,
        chunker: AudioChunker,
        source: Path,
        *,
        chunk_minutes: int,
        max_chunks: int,
        media_id: str,
        cancel: CancelToken,
    ) -> None:
        self._chunker = chunker
        self._source = source
        self._chunk_minutes = chunk_minutes
        self._max_chunks = max_chunks
        self._media_id = media_id
        self._cancel = cancel
        self.truncated = False

    def __iter__(self) -> Iterator[AudioChunk]:
        self.truncated = False
        for ordinal in range(1, self._max_chunks + 1):
            self._cancel.raise_if_cancelled()
            start = (ordinal - 1) * self._chunk_minutes
            try:
                chunk = self._chunker.cut_chunk(
                    self._source,
                    start_minutes=start,
                    duration_minutes=self._chunk_minutes,
                    ordinal=ordinal,
                    media_id=self._media_id,
                    cancel=self._cancel,
                )
            except (PermanentError, TransientError) as exc:
                logger.warning("Could not cut chunk %d of %s; stopping early: %s", ordinal, self._source.name, exc)
                self.truncated = True
                return
            if chunk is None:
                return
            if chunk.size_bytes < self._chunker.config.stop_below_bytes:
                logger.debug("Chunk %d is %d bytes; treating as end of audio", ordinal, chunk.size_bytes)
                chunk.release()
                return
            yield chunk
        self.truncated = True


class AudioChunker:
    def __init__(
        self,
        *,
        temp_dir: Path,
        config: AudioChunkerConfig | None = None,
        is_tool_available: Callable[[str], bool] = tool_available,
        runner: ToolRunner = run_tool,
    ) -> None:
        self.config = config or AudioChunkerConfig()
        self._temp_dir = temp_dir
        self._is_tool_available = is_tool_available
        self._runner = runner

    @property
    def precise(self) -> bool:
        return self.config.prefer_precise and self._is_tool_available(self.config.ffmpeg_command)

    def estimate_duration_minutes(self, size_bytes: int) -> float:
        size_mb = size_bytes / MIB
        return max(self.config.min_estimated_minutes, size_mb * self.config.minutes_per_mb)

    def split_prefix(
        self,
        source: Path,
        duration_minutes: float,
        *,
        media_id: str,
        cancel: CancelToken | None = None,
    ) -> AudioAsset:
        """Write the first ``duration_minutes`` of ``source`` to a new owned file."""
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be > 0")
        token = cancel or CancelToken()
        if self.precise:
            output = temp_path(self._temp_dir, media_id=media_id, label="prefix", suffix=source.suffix)
            try:
                self._ffmpeg_cut(source, output, start_minutes=0, duration_minutes=duration_minutes, cancel=token)
                size = output.stat().st_size if output.exists() else 0
                if size >= self.config.precise_min_bytes:
                    return AudioAsset(local_path=output, size_bytes=size, source_strategy="ffmpeg_prefix")
                logger.warning("ffmpeg prefix of %s was empty; using byte approximation", source.name)
            except RunCancelledError:
                raise
            except (PermanentError, TransientError) as exc:
                logger.warning("ffmpeg prefix failed for %s: %s; using byte approximation", source.name, exc)
            finally:
                if not _is_kept(output, self.config.precise_min_bytes):
                    output.unlink(missing_ok=True)
        return self._approximate_prefix(source, duration_minutes, media_id=media_id, cancel=token)

    def split_into_chunks(
        self,
        source: Path,
        *,
        chunk_minutes: int,
        max_chunks: int,
        media_id: str,
        cancel: CancelToken | None = None,
    ) -> ChunkSequence:
        if chunk_minutes < 1:
            raise ValueError("chunk_minutes must be >= 1")
        if max_chunks < 1:
            raise ValueError("max_chunks must be >= 1")
        return ChunkSequence(
            self,
            source,
            chunk_minutes=chunk_minutes,
            max_chunks=max_chunks,
            media_id=media_id,
            cancel=cancel or CancelToken(),
        )

    def cut_chunk(
        self,
        source: Path,
        *,
        start_minutes: int,
        duration_minutes: int,
        ordinal: int,
        media_id: str,
        cancel: CancelToken,
    ) -> AudioChunk | None:
        """Cut one chunk, or return ``None`` when the audio ends before ``start_minutes``.

        A failed ffmpeg cut after the first chunk raises; only the first chunk
        falls back to the byte approximation.
        """
        if self.precise:
            try:
                chunk = self._precise_chunk(
                    source,
                    start_minutes=start_minutes,
                    duration_minutes=duration_minutes,
                    ordinal=ordinal,
                    media_id=media_id,
                    cancel=cancel,
                )
            except (PermanentError, TransientError) as exc:
                if start_minutes > 0:
                    raise
                logger.warning("ffmpeg failed on the first chunk of %s: %s; using byte approximation", source.name, exc)
            else:
                if chunk is not None or start_minutes > 0:
                    return chunk
                logger.warning("ffmpeg produced no first chunk for %s; using byte approximation", source.name)
        return self._approximate_chunk(
            source,
            start_minutes=start_minutes,
            duration_minutes=duration_minutes,
            ordinal=ordinal,
            media_id=media_id,
            cancel=cancel,
        )

    def _precise_chunk(
        self,
        source: Path,
        *,
        start_minutes: int,
        duration_minutes: int,
        ordinal: int,
        media_id: str,
        cancel: CancelToken,
    ) -> AudioChunk | None:
        output = temp_path(self._temp_dir, media_id=media_id, label=f"chunk{ordinal}", suffix=source.suffix)
        try:
            self._ffmpeg_cut(
                source,
                output,
                start_minutes=start_minutes,
                duration_minutes=duration_minutes,
                cancel=cancel,
            )
        except BaseException:
            output.unlink(missing_ok=True)
            raise
        size = output.stat().st_size if output.exists() else 0
        if size < self.config.precise_min_bytes:
            output.unlink(missing_ok=True)
            return None
        return AudioChunk(local_path=output, size_bytes=size, start_offset_minutes=start_minutes, ordinal=ordinal)

    def _approximate_prefix(
        self,
        source: Path,
        duration_minutes: float,
        *,
        media_id: str,
        cancel: CancelToken,
    ) -> AudioAsset:
        size = source.stat().st_size
        total_minutes = self.estimate_duration_minutes(size)
        target = int(size * min(1.0, duration_minutes / total_minutes))
        length = max(1, min(target, self.config.max_prefix_bytes, size))
        output = temp_path(self._temp_dir, media_id=media_id, label="prefix", suffix=source.suffix)
        _copy_range(source, output, start=0, length=length, cancel=cancel)
        logger.info(
            "Approximated %.1f-minute prefix of %s as %d bytes (estimated %.1f minutes total)",
            duration_minutes,
            source.name,
            length,
            total_minutes,
        )
        return AudioAsset(local_path=output, size_bytes=length, source_strategy="byte_prefix", approximate=True)

    def _approximate_chunk(
        self,
        source: Path,
        *,
        start_minutes: int,
        duration_minutes: int,
        ordinal: int,
        media_id: str,
        cancel: CancelToken,
    ) -> AudioChunk | None:
        size = source.stat().st_size
        bytes_per_minute = size / self.estimate_duration_minutes(size)
        start = int(start_minutes * bytes_per_minute)
        if start >= size:
            return None
        end = min(size, int((start_minutes + duration_minutes) * bytes_per_minute))
        length = end - start
        if length < self.config.approximate_min_bytes:
            return None
        output = temp_path(self._temp_dir, media_id=media_id, label=f"chunk{ordinal}", suffix=source.suffix)
        _copy_range(source, output, start=start, length=length, cancel=cancel)
        return AudioChunk(
            local_path=output,
            size_bytes=length,
            start_offset_minutes=start_minutes,
            ordinal=ordinal,
            approximate=True,
        )

    def _ffmpeg_cut(
        self,
        source: Path,
        output: Path,
        *,
        start_minutes: float,
        duration_minutes: float,
        cancel: CancelToken,
    ) -> None:
        args: Sequence[str] = (
            self.config.ffmpeg_command,
            "-hide_banner",
            "-loglevel",
            "error",
            "-ss",
            _seconds(start_minutes),
            "-i",
            str(source),
            "-t",
            _seconds(duration_minutes),
            "-c",
            "copy",
            "-y",
            str(output),
        )
        self._runner(args, timeout=self.config.ffmpeg_timeout_seconds, cancel=cancel)


def _seconds(minutes: float) -> str:
    return str(int(round(minutes * 60)))


def _is_kept(path: Path, min_bytes: int) -> bool:
    try:
        return path.stat().st_size >= min_bytes
    except OSError:
        return False


def _copy_range(source: Path, output: Path, *, start: int, length: int, cancel: CancelToken) -> None:
    try:
        with source.open("rb") as src, output.open("wb") as dst:
            src.seek(start)
            remaining = length
            while remaining > 0:
                cancel.raise_if_cancelled()
                block = src.read(min(_COPY_BLOCK_BYTES, remaining))
                if not block:
                    break
                dst.write(block)
                remaining -= len(block)
    except BaseException:
        output.unlink(missing_ok=True)
        raise
