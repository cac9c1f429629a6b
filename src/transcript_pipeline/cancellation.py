from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import wait as wait_futures
from typing import TypeVar

from transcript_pipeline.errors import RunCancelledError, StepTimeoutError

T = TypeVar("T")

_POLL_INTERVAL_SECONDS = 0.1


class CancelToken:
    """Caller-controlled cancellation for one orchestrator run.

    A token may carry a run deadline; passing it cancels the run. ``bounded``
    derives a step token sharing the same cancel event whose own deadline
    raises ``StepTimeoutError`` (a transient failure of that step only).
    """

    def __init__(
        self,
        *,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        _event: threading.Event | None = None,
        _step_deadline: float | None = None,
    ) -> None:
        self._event = _event if _event is not None else threading.Event()
        self._deadline = deadline
        self._step_deadline = _step_deadline
        self._clock = clock

    @classmethod
    def with_timeout(cls, seconds: float | None) -> CancelToken:
        if seconds is None:
            return cls()
        if seconds <= 0:
            raise ValueError("timeout must be > 0")
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def step_expired(self) -> bool:
        return self._step_deadline is not None and self._clock() >= self._step_deadline

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError("run was cancelled")
        if self._deadline is not None and self._clock() >= self._deadline:
            raise RunCancelledError("run deadline exceeded")
        if self.step_expired:
            raise StepTimeoutError("step timed out")

    def remaining(self, timeout: float | None = None) -> float | None:
        candidates = [value for value in (self._deadline, self._step_deadline) if value is not None]
        if not candidates:
            return timeout
        left = max(0.0, min(candidates) - self._clock())
        if timeout is None:
            return left
        return min(timeout, left)

    def bounded(self, seconds: float | None) -> CancelToken:
        if seconds is None:
            return CancelToken(
                deadline=self._deadline,
                clock=self._clock,
                _event=self._event,
                _step_deadline=self._step_deadline,
            )
        step_deadline = self._clock() + seconds
        if self._step_deadline is not None:
            step_deadline = min(step_deadline, self._step_deadline)
        return CancelToken(
            deadline=self._deadline,
            clock=self._clock,
            _event=self._event,
            _step_deadline=step_deadline,
        )

    def wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the run is cancelled first."""
        self.raise_if_cancelled()
        end = self._clock() + max(0.0, seconds)
        while True:
            left = end - self._clock()
            if left <= 0:
                return
            limit = self.remaining(left)
            self._event.wait(limit if limit is not None else left)
            self.raise_if_cancelled()


def call_interruptibly(
    fn: Callable[[], T],
    *,
    cancel: CancelToken,
    name: str = "pipeline-call",
    grace_seconds: float = 0.0,
    on_abandon: Callable[[], None] | None = None,
) -> T:
    """Run a blocking call on a worker thread and stop waiting once ``cancel`` fires.

    After a cancel or step timeout the caller waits up to ``grace_seconds`` for
    the worker to finish. A worker still running after that is abandoned: its
    result is discarded and ``on_abandon`` runs on the worker thread once ``fn``
    returns, so it can remove whatever ``fn`` left on disk.
    """
    cancel.raise_if_cancelled()
    future: Future[T] = Future()
    abandoned = threading.Event()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as exc:  # noqa: BLE001
            future.set_exception(exc)
        if abandoned.is_set() and on_abandon is not None:
            on_abandon()

    threading.Thread(target=_target, name=name, daemon=True).start()
    while not future.done():
        try:
            cancel.raise_if_cancelled()
        except (RunCancelledError, StepTimeoutError):
            if grace_seconds > 0:
                wait_futures([future], timeout=grace_seconds)
            abandoned.set()
            raise
        wait_futures([future], timeout=_POLL_INTERVAL_SECONDS)
    return future.result()
