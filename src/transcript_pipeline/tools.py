from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.errors import PermanentError, StepTimeoutError, TransientError

logger = logging.getLogger(__name__)

KNOWN_TOOLS: tuple[str, ...] = ("ffmpeg", "yt-dlp", "youtube-dl")

_TRANSIENT_STDERR_MARKERS: tuple[str, ...] = (
    "429",
    "too many requests",
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "temporary failure in name resolution",
    "name or service not known",
    "network is unreachable",
    "http error 5",
)
_POLL_SECONDS = 0.2


@dataclass(frozen=True)
class ToolResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


def resolve_tool(command: str) -> str | None:
    return shutil.which(command)


def tool_available(command: str) -> bool:
    return resolve_tool(command) is not None


def check_available_tools(commands: Sequence[str] = KNOWN_TOOLS) -> dict[str, bool]:
    return {command: tool_available(command) for command in commands}


def run_tool(
    args: Sequence[str],
    *,
    timeout: float | None,
    cancel: CancelToken | None = None,
) -> ToolResult:
    """Run an external command, killing it on timeout or cancellation.

    Raises ``PermanentError`` when the executable is missing,
    ``StepTimeoutError`` on timeout and ``TransientError``/``PermanentError``
    on a nonzero exit depending on what stderr says.
    """
    if not args:
        raise ValueError("args must be non-empty")
    token = (cancel or CancelToken()).bounded(timeout)
    rendered = tuple(str(arg) for arg in args)
    logger.debug("Running %s", " ".join(rendered))
    try:
        proc = subprocess.Popen(
            rendered,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as exc:
        raise PermanentError(f"{rendered[0]} not found on PATH") from exc
    except OSError as exc:
        raise PermanentError(f"Failed to start {rendered[0]}: {exc}") from exc

    try:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                token.raise_if_cancelled()
    except StepTimeoutError as exc:
        _kill(proc)
        limit = f" after {timeout:g}s" if timeout is not None else ""
        raise StepTimeoutError(f"{rendered[0]} timed out{limit}") from exc
    except BaseException:
        _kill(proc)
        raise

    result = ToolResult(args=rendered, returncode=proc.returncode, stdout=stdout or "", stderr=stderr or "")
    if result.returncode != 0:
        raise _error_for_exit(result)
    return result


def _kill(proc: subprocess.Popen[str]) -> None:
    proc.kill()
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", proc.pid)


def _error_for_exit(result: ToolResult) -> TransientError | PermanentError:
    tail = _stderr_tail(result.stderr)
    message = f"{result.args[0]} exited with code {result.returncode}"
    if tail:
        message = f"{message}: {tail}"
    lowered = result.stderr.lower()
    if any(marker in lowered for marker in _TRANSIENT_STDERR_MARKERS):
        return TransientError(message)
    return PermanentError(message)


def _stderr_tail(stderr: str, *, max_chars: int = 300) -> str:
    lines = [line.strip() for line in stderr.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    tail = lines[-1]
    if len(tail) > max_chars:
        tail = tail[: max_chars - 3] + "..."
    return tail
