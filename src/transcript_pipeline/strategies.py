from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.domain.models import (
    AcquisitionAttempt,
    AcquisitionTrace,
    AttemptOutcome,
    ErrorClass,
    Stage,
)
from transcript_pipeline.errors import PipelineError, RunCancelledError, classify_exception

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    strategy_name: str


@dataclass(frozen=True)
class Failure:
    strategy_name: str
    error_class: ErrorClass
    message: str


@dataclass(frozen=True)
class Exhausted:
    failures: tuple[Failure, ...]

    @property
    def error_classes(self) -> tuple[ErrorClass, ...]:
        return tuple(failure.error_class for failure in self.failures)


def attempt_strategy(
    strategy_name: str,
    fn: Callable[[], T],
    *,
    stage: Stage,
    trace: AcquisitionTrace,
    clock: Callable[[], float] = time.monotonic,
) -> Success[T] | Failure:
    """Run one strategy and append exactly one attempt to ``trace``.

    Errors are converted to a ``Failure``; cancellation is recorded and re-raised.
    """
    started = clock()
    try:
        value = fn()
    except RunCancelledError as exc:
        _record(trace, stage, strategy_name, started, clock, ErrorClass.cancelled, str(exc))
        raise
    except PipelineError as exc:
        return _fail(trace, stage, strategy_name, started, clock, exc.error_class, str(exc))
    except Exception as exc:
        error_class = classify_exception(exc)
        logger.debug("%s/%s raised %s", stage.value, strategy_name, type(exc).__name__, exc_info=True)
        return _fail(trace, stage, strategy_name, started, clock, error_class, f"{type(exc).__name__}: {exc}")

    _record(trace, stage, strategy_name, started, clock, ErrorClass.none, None)
    return Success(value=value, strategy_name=strategy_name)


def first_success(
    candidates: Iterable[tuple[str, Callable[[], T]]],
    *,
    stage: Stage,
    trace: AcquisitionTrace,
    cancel: CancelToken,
    pause_seconds: float = 0.0,
    sleep: Callable[[float], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> Success[T] | Exhausted:
    """Try each candidate in order, one at a time; the first success wins."""
    pause = sleep if sleep is not None else cancel.wait
    failures: list[Failure] = []
    for index, (name, fn) in enumerate(candidates):
        cancel.raise_if_cancelled()
        if index and pause_seconds > 0:
            pause(pause_seconds)
        outcome = attempt_strategy(name, fn, stage=stage, trace=trace, clock=clock)
        if isinstance(outcome, Success):
            return outcome
        failures.append(outcome)
    return Exhausted(failures=tuple(failures))


def _fail(
    trace: AcquisitionTrace,
    stage: Stage,
    strategy_name: str,
    started: float,
    clock: Callable[[], float],
    error_class: ErrorClass,
    message: str,
) -> Failure:
    _record(trace, stage, strategy_name, started, clock, error_class, message)
    return Failure(strategy_name=strategy_name, error_class=error_class, message=message)


def _record(
    trace: AcquisitionTrace,
    stage: Stage,
    strategy_name: str,
    started: float,
    clock: Callable[[], float],
    error_class: ErrorClass,
    message: str | None,
) -> None:
    duration_ms = max(0, int((clock() - started) * 1000))
    outcome = AttemptOutcome.success if error_class == ErrorClass.none else AttemptOutcome.failure
    trace.record(
        AcquisitionAttempt(
            stage=stage,
            strategy_name=strategy_name,
            outcome=outcome,
            error_class=error_class,
            duration_ms=duration_ms,
            message=message,
        ),
    )
    if outcome == AttemptOutcome.success:
        logger.info("[%s] %s succeeded in %d ms", stage.value, strategy_name, duration_ms)
    else:
        logger.info(
            "[%s] %s failed (%s) in %d ms: %s",
            stage.value,
            strategy_name,
            error_class.value,
            duration_ms,
            message,
        )
