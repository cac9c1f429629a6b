from __future__ import annotations

import socket
import subprocess
from collections import Counter

import httpx

from transcript_pipeline.domain.models import AcquisitionTrace, ErrorClass

_TRANSIENT_STATUS = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
_NOT_AVAILABLE_STATUS = frozenset({404, 410})


class PipelineError(RuntimeError):
    error_class: ErrorClass = ErrorClass.permanent


class InvalidReferenceError(PipelineError):
    error_class = ErrorClass.invalid_reference


class NotAvailableError(PipelineError):
    error_class = ErrorClass.not_available


class TransientError(PipelineError):
    error_class = ErrorClass.transient


class StepTimeoutError(TransientError):
    pass


class PermanentError(PipelineError):
    error_class = ErrorClass.permanent


class RunCancelledError(PipelineError):
    error_class = ErrorClass.cancelled


class _TracedError(PipelineError):
    def __init__(self, message: str, *, trace: AcquisitionTrace) -> None:
        super().__init__(message)
        self.trace = trace

    def detail(self) -> str:
        lines = [str(self)]
        for attempt in self.trace:
            line = (
                f"  [{attempt.stage.value}] {attempt.strategy_name}: {attempt.outcome.value}"
                f" ({attempt.error_class.value}, {attempt.duration_ms} ms)"
            )
            if attempt.message:
                line = f"{line} - {attempt.message}"
            lines.append(line)
        return "\n".join(lines)


class AcquisitionFailedError(_TracedError):
    error_class = ErrorClass.not_available


class TranscriptionFailedError(_TracedError):
    error_class = ErrorClass.permanent


class AggregatedError(_TracedError):
    """Every stage was exhausted; ``trace`` holds each attempt and its error class."""

    error_class = ErrorClass.not_available

    def error_counts(self) -> Counter[ErrorClass]:
        return Counter(attempt.error_class for attempt in self.trace.failures())

    @property
    def actionable(self) -> bool:
        return self.error_counts()[ErrorClass.transient] > 0

    def summary(self) -> str:
        messages = " ".join((attempt.message or "").lower() for attempt in self.trace.failures())
        if "api key" in messages and not self.actionable:
            return "Speech-to-text is not configured (missing or invalid API key) and no other text was found."
        if self.actionable:
            return "Could not fetch content because external services were unreachable. Try again later."
        counts = self.error_counts()
        if counts and set(counts) <= {ErrorClass.not_available}:
            return "No captions or downloadable audio exist for this media, and it has no description."
        return "Could not fetch content for this media."


def classify_exception(exc: BaseException) -> ErrorClass:
    if isinstance(exc, PipelineError):
        return exc.error_class
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return ErrorClass.transient
    if isinstance(exc, httpx.ProxyError):
        return ErrorClass.transient
    if isinstance(exc, subprocess.TimeoutExpired):
        return ErrorClass.transient
    if isinstance(exc, FileNotFoundError):
        return ErrorClass.permanent
    if isinstance(exc, (TimeoutError, ConnectionError, socket.gaierror)):
        return ErrorClass.transient
    return ErrorClass.permanent


def classify_status(status_code: int) -> ErrorClass:
    if status_code in _TRANSIENT_STATUS or status_code >= 500:
        return ErrorClass.transient
    if status_code in _NOT_AVAILABLE_STATUS:
        return ErrorClass.not_available
    return ErrorClass.permanent


def error_for_class(error_class: ErrorClass, message: str) -> PipelineError:
    match error_class:
        case ErrorClass.transient:
            return TransientError(message)
        case ErrorClass.not_available:
            return NotAvailableError(message)
        case ErrorClass.invalid_reference:
            return InvalidReferenceError(message)
        case ErrorClass.cancelled:
            return RunCancelledError(message)
        case _:
            return PermanentError(message)


def wrap_exception(exc: BaseException, *, context: str) -> PipelineError:
    if isinstance(exc, PipelineError):
        return exc
    return error_for_class(classify_exception(exc), f"{context}: {exc}")
