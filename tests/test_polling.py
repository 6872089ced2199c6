from __future__ import annotations

import random

import allure
import pytest

from genbatch.errors import CancelledError, FetchError
from genbatch.polling import (
    CancellationToken,
    PollTimeoutError,
    RetryPolicy,
    poll_until,
    retry_call,
)
from tests.fakes import FakeClock

pytestmark = [
    allure.epic("Batch Generation"),
    allure.feature("Polling & Retries"),
]


def test_poll_until_returns_first_accepted_value(fake_clock: FakeClock) -> None:
    values = iter([1, 2, 3, 4])

    result = poll_until(
        lambda: next(values),
        lambda value: value >= 3,
        RetryPolicy(interval_seconds=0.5, max_attempts=10),
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )

    assert result == 3
    assert fake_clock.sleeps == [0.5, 0.5]


def test_poll_until_stops_at_max_attempts(fake_clock: FakeClock) -> None:
    with pytest.raises(PollTimeoutError) as excinfo:
        poll_until(
            lambda: None,
            lambda value: value is not None,
            RetryPolicy(interval_seconds=1.0, max_attempts=3),
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )

    assert excinfo.value.attempts == 3
    assert len(fake_clock.sleeps) == 2


def test_poll_until_caps_last_wait_at_the_deadline(fake_clock: FakeClock) -> None:
    with pytest.raises(PollTimeoutError):
        poll_until(
            lambda: None,
            lambda value: value is not None,
            RetryPolicy(interval_seconds=2.0, deadline_seconds=5.0),
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )

    assert fake_clock.sleeps == [2.0, 2.0, 1.0]
    assert fake_clock.now == pytest.approx(5.0)


def test_poll_until_checks_cancellation_before_each_probe(fake_clock: FakeClock) -> None:
    cancel = CancellationToken()
    calls: list[float] = []

    def _probe() -> None:
        calls.append(fake_clock())
        if len(calls) == 2:
            cancel.cancel()

    with pytest.raises(CancelledError):
        poll_until(
            _probe,
            lambda _: False,
            RetryPolicy(interval_seconds=1.0),
            cancel=cancel,
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )

    assert calls == [0.0, 1.0]


def test_cancellation_token_interrupts_real_waits() -> None:
    cancel = CancellationToken()
    cancel.cancel()

    assert cancel.wait(30.0) is True
    cancel.reset()
    assert cancel.cancelled is False


def test_retry_call_reraises_last_error_after_budget(fake_clock: FakeClock) -> None:
    attempts: list[int] = []

    def _fetch() -> bytes:
        attempts.append(len(attempts) + 1)
        raise FetchError(f"Timeout on attempt {len(attempts)}")

    with pytest.raises(FetchError, match="attempt 3"):
        retry_call(
            _fetch,
            RetryPolicy(interval_seconds=1.0, max_attempts=3),
            retry_on=(FetchError,),
            sleep=fake_clock.sleep,
        )

    assert attempts == [1, 2, 3]
    assert fake_clock.sleeps == [1.0, 1.0]


def test_retry_call_does_not_retry_unlisted_errors(fake_clock: FakeClock) -> None:
    def _boom() -> None:
        raise KeyError("missing")

    with pytest.raises(KeyError):
        retry_call(
            _boom,
            RetryPolicy(interval_seconds=1.0, max_attempts=3),
            retry_on=(FetchError,),
            sleep=fake_clock.sleep,
        )

    assert fake_clock.sleeps == []


def test_retry_call_reports_each_retry(fake_clock: FakeClock) -> None:
    outcomes = iter([FetchError("first"), FetchError("second"), b"payload"])
    seen: list[tuple[int, str]] = []

    def _fetch() -> bytes:
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = retry_call(
        _fetch,
        RetryPolicy(interval_seconds=0.1, max_attempts=5),
        retry_on=(FetchError,),
        sleep=fake_clock.sleep,
        on_retry=lambda attempt, error: seen.append((attempt, str(error))),
    )

    assert result == b"payload"
    assert seen == [(1, "first"), (2, "second")]


def test_retry_policy_backoff_is_capped_and_jitter_only_shortens() -> None:
    policy = RetryPolicy(
        interval_seconds=1.0,
        backoff_factor=2.0,
        max_interval_seconds=5.0,
        jitter_ratio=0.5,
    )
    rng = random.Random(7)  # noqa: S311

    delays = [policy.delay_for(attempt, rng) for attempt in range(1, 6)]

    ceilings = [1.0, 2.0, 4.0, 5.0, 5.0]
    for delay, ceiling in zip(delays, ceilings, strict=True):
        assert ceiling / 2 <= delay <= ceiling


def test_retry_policy_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(interval_seconds=1.0, max_attempts=0)
    with pytest.raises(ValueError, match="jitter_ratio"):
        RetryPolicy(interval_seconds=1.0, jitter_ratio=1.5)
