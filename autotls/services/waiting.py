from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

LOGGER = logging.getLogger("autotls.waiting")

T = TypeVar("T")


class PollTimeoutError(TimeoutError):
    def __init__(self, elapsed_seconds: float) -> None:
        super().__init__(f"timed out waiting for the condition after {elapsed_seconds:.1f}s")
        self.elapsed_seconds = elapsed_seconds


def poll_immediate(
    *,
    interval_seconds: float,
    timeout_seconds: float,
    condition: Callable[[], bool],
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Run `condition` right away, then once per interval, until it returns True.

    Exceptions raised by `condition` propagate unchanged and stop the loop.
    Raises `PollTimeoutError` once the deadline passes without success.
    """
    started = clock()
    deadline = started + timeout_seconds
    while True:
        if condition():
            return
        now = clock()
        if now >= deadline:
            raise PollTimeoutError(now - started)
        sleep(min(interval_seconds, max(deadline - now, 0.0)))


def retry_errors(
    operation: Callable[[int], T],
    *,
    is_retryable: Callable[[BaseException], bool],
    delay_seconds: float,
    deadline: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call `operation(attempt)` until it succeeds or fails with a non-retryable error.

    There is no attempt cap; retryable failures are re-raised only once `deadline`
    (a `clock()` timestamp) has passed.
    """
    attempt = 0
    while True:
        try:
            return operation(attempt)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if deadline is not None and clock() >= deadline:
                raise
            LOGGER.warning("retrying after transient error attempt=%s error=%s", attempt + 1, exc)
        attempt += 1
        sleep(delay_seconds)
