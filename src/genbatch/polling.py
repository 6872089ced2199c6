"""Cancellation tokens, retry policies and the generic poll/retry primitives."""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from genbatch.errors import CancelledError, GenBatchError

T = TypeVar("T")

Clock = Callable[[], float]
Sleeper = Callable[[float], None]


class PollTimeoutError(GenBatchError, TimeoutError):
    """Predicate was not satisfied within the policy's budget."""

    def __init__(self, message: str, *, attempts: int, elapsed_seconds: float) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds


class CancellationToken:
    """Cooperative cancellation flag that can also interrupt waits."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancellation cut the wait short."""

        return self._event.wait(timeout=max(0.0, seconds))


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Interval schedule with an attempt budget and/or a wall-clock deadline.

    ``backoff_factor`` > 1 grows the interval per attempt up to
    ``max_interval_seconds``; ``jitter_ratio`` shaves a random fraction off each
    delay so synchronized callers spread out.
    """

    interval_seconds: float
    max_attempts: int | None = None
    deadline_seconds: float | None = None
    backoff_factor: float = 1.0
    max_interval_seconds: float | None = None
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0.")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.deadline_seconds is not None and self.deadline_seconds < 0:
            raise ValueError("deadline_seconds must be >= 0.")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be within [0, 1].")

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay to wait after the given 1-based attempt."""

        delay = self.interval_seconds * (self.backoff_factor ** max(attempt - 1, 0))
        if self.max_interval_seconds is not None:
            delay = min(delay, self.max_interval_seconds)
        if self.jitter_ratio > 0 and delay > 0:
            generator = rng or random.Random()  # noqa: S311
            delay -= generator.uniform(0, delay * self.jitter_ratio)
        return delay


def poll_until(  # noqa: PLR0913
    probe: Callable[[], T],
    predicate: Callable[[T], bool],
    policy: RetryPolicy,
    *,
    cancel: CancellationToken | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleeper | None = None,
    rng: random.Random | None = None,
) -> T:
    """Call ``probe`` until ``predicate`` accepts its value or the policy runs out.

    Cancellation is checked before every probe. Waits never extend past the
    policy deadline, so a timeout surfaces at most one interval after it.
    """

    wait = _resolve_sleeper(cancel=cancel, sleep=sleep)
    started = clock()
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        attempt += 1
        value = probe()
        if predicate(value):
            return value

        elapsed = clock() - started
        if policy.max_attempts is not None and attempt >= policy.max_attempts:
            raise PollTimeoutError(
                f"Condition not met after {attempt} attempts.",
                attempts=attempt,
                elapsed_seconds=elapsed,
            )
        delay = policy.delay_for(attempt, rng)
        if policy.deadline_seconds is not None:
            remaining = policy.deadline_seconds - elapsed
            if remaining <= 0:
                raise PollTimeoutError(
                    f"Condition not met within {policy.deadline_seconds:.1f}s.",
                    attempts=attempt,
                    elapsed_seconds=elapsed,
                )
            delay = min(delay, remaining)
        wait(delay)
        if policy.deadline_seconds is not None and clock() - started >= policy.deadline_seconds:
            if cancel is not None:
                cancel.raise_if_cancelled()
            raise PollTimeoutError(
                f"Condition not met within {policy.deadline_seconds:.1f}s.",
                attempts=attempt,
                elapsed_seconds=clock() - started,
            )


def retry_call(  # noqa: PLR0913
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...],
    cancel: CancellationToken | None = None,
    sleep: Sleeper | None = None,
    on_retry: Callable[[int, BaseException], None] | None = None,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation`` up to ``policy.max_attempts`` times, re-raising the last error.

    Without a ``cancel`` token the retries run to completion regardless of any
    cancellation requested elsewhere.
    """

    wait = _resolve_sleeper(cancel=cancel, sleep=sleep)
    max_attempts = policy.max_attempts or 1
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except retry_on as error:
            if attempt >= max_attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, error)
            wait(policy.delay_for(attempt, rng))
            if cancel is not None:
                cancel.raise_if_cancelled()


def _resolve_sleeper(*, cancel: CancellationToken | None, sleep: Sleeper | None) -> Sleeper:
    if sleep is not None:
        return sleep
    if cancel is None:
        return time.sleep

    def _sleep(seconds: float) -> None:
        cancel.wait(seconds)

    return _sleep
