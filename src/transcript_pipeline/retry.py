from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TypeVar

from transcript_pipeline.cancellation import CancelToken
from transcript_pipeline.errors import TransientError

T = TypeVar("T")

logger = logging.getLogger(__name__)

Sleep = Callable[[float], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    backoff_factor: float = 2.0
    max_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    def delay_for(self, retry_index: int) -> float:
        return min(self.base_delay_seconds * (self.backoff_factor**retry_index), self.max_delay_seconds)

    def with_overrides(
        self,
        *,
        max_attempts: int | None = None,
        base_delay_seconds: float | None = None,
    ) -> RetryPolicy:
        return replace(
            self,
            max_attempts=self.max_attempts if max_attempts is None else max_attempts,
            base_delay_seconds=self.base_delay_seconds if base_delay_seconds is None else base_delay_seconds,
            max_delay_seconds=max(
                self.max_delay_seconds,
                self.base_delay_seconds if base_delay_seconds is None else base_delay_seconds,
            ),
        )


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    cancel: CancelToken,
    label: str,
    sleep: Sleep | None = None,
) -> T:
    """Call ``fn`` and retry it on ``TransientError`` with exponential backoff.

    Any other exception propagates on the first occurrence.
    """
    pause = sleep if sleep is not None else cancel.wait
    for attempt in range(1, policy.max_attempts + 1):
        cancel.raise_if_cancelled()
        try:
            result = fn()
        except TransientError as exc:
            if attempt >= policy.max_attempts:
                logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                raise
            delay = policy.delay_for(attempt - 1)
            logger.warning(
                "%s failed on attempt %d/%d, retrying in %.1fs: %s",
                label,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            pause(delay)
            continue
        if attempt > 1:
            logger.info("%s succeeded on attempt %d", label, attempt)
        return result
    raise AssertionError("unreachable")
