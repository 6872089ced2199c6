"""Convergence detection for asynchronously produced result sets.

A single "target count reached" check is not enough: the remote generator can
briefly expose partial or placeholder results. The detector therefore requires
the same set of distinct, valid identifiers on several consecutive polls and a
confirmatory re-observation after a short grace delay, while the overall wait
stays bounded by the timeout.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from genbatch.errors import StabilityTimeoutError
from genbatch.polling import (
    CancellationToken,
    Clock,
    PollTimeoutError,
    RetryPolicy,
    Sleeper,
    poll_until,
)

logger = logging.getLogger(__name__)

ResultId = str
Observe = Callable[[], Sequence[ResultId]]


@dataclass(slots=True)
class _StabilityTracker:
    target_count: int
    required_stable_checks: int
    previous: frozenset[ResultId] | None = None
    stable_runs: int = 0

    def record(self, observed: tuple[ResultId, ...]) -> bool:
        """Feed one poll; return True once the run of identical sets is long enough."""

        if len(observed) < self.target_count:
            self.stable_runs = 0
            return False
        current = frozenset(observed)
        if current == self.previous:
            self.stable_runs += 1
        else:
            # The poll that first shows a qualifying set is its first stable check.
            self.stable_runs = 1
            self.previous = current
        return self.stable_runs >= self.required_stable_checks

    def confirm(self, observed: tuple[ResultId, ...]) -> bool:
        if len(observed) >= self.target_count and frozenset(observed) == self.previous:
            return True
        self.stable_runs = 0
        return False


class StabilityDetector:
    """Polls an observation function until its result set settles."""

    def __init__(
        self,
        *,
        confirm_grace_seconds: float = 2.0,
        clock: Clock = time.monotonic,
        sleep: Sleeper | None = None,
    ) -> None:
        self.confirm_grace_seconds = confirm_grace_seconds
        self._clock = clock
        self._sleep = sleep

    def await_stable(  # noqa: PLR0913
        self,
        observe: Observe,
        *,
        target_count: int,
        required_stable_checks: int,
        poll_interval_seconds: float,
        timeout_seconds: float,
        cancel: CancellationToken | None = None,
        is_valid: Callable[[ResultId], bool] | None = None,
    ) -> tuple[ResultId, ...]:
        """Return the settled identifiers in observation order.

        Raises:
            StabilityTimeoutError: the set did not settle within ``timeout_seconds``.
            CancelledError: ``cancel`` was set before or between polls.
        """

        if target_count < 1 or required_stable_checks < 1:
            raise ValueError("target_count and required_stable_checks must be >= 1.")

        tracker = _StabilityTracker(
            target_count=target_count,
            required_stable_checks=required_stable_checks,
        )
        started = self._clock()
        wait = self._sleep or (cancel.wait if cancel is not None else time.sleep)
        last_observed: tuple[ResultId, ...] = ()

        def _step() -> tuple[ResultId, ...] | None:
            nonlocal last_observed
            observed = distinct_results(observe(), is_valid=is_valid)
            last_observed = observed
            if not tracker.record(observed):
                logger.debug(
                    "Observed %d/%d results, stable check %d/%d",
                    len(observed),
                    target_count,
                    tracker.stable_runs,
                    required_stable_checks,
                )
                return None

            if cancel is not None:
                cancel.raise_if_cancelled()
            remaining = timeout_seconds - (self._clock() - started)
            wait(min(self.confirm_grace_seconds, max(0.0, remaining)))
            if cancel is not None:
                cancel.raise_if_cancelled()
            confirmed = distinct_results(observe(), is_valid=is_valid)
            last_observed = confirmed
            if tracker.confirm(confirmed):
                logger.info("Results stabilized: %d identifiers confirmed", len(confirmed))
                return confirmed
            logger.info("Confirmation observation changed, restarting stability count")
            return None

        try:
            settled = poll_until(
                _step,
                lambda value: value is not None,
                RetryPolicy(
                    interval_seconds=poll_interval_seconds,
                    deadline_seconds=timeout_seconds,
                ),
                cancel=cancel,
                clock=self._clock,
                sleep=self._sleep,
            )
        except PollTimeoutError as error:
            raise StabilityTimeoutError(
                f"Results did not stabilize within {timeout_seconds:.1f}s; "
                f"last observed {len(last_observed)}/{target_count}.",
                last_observed=last_observed,
            ) from error
        if settled is None:  # pragma: no cover - predicate guarantees a value
            raise RuntimeError("Stability poll returned without a settled set.")
        return settled


def distinct_results(
    observed: Iterable[ResultId],
    *,
    is_valid: Callable[[ResultId], bool] | None = None,
) -> tuple[ResultId, ...]:
    """Drop empty, invalid and repeated identifiers, keeping first-seen order."""

    seen: set[ResultId] = set()
    ordered: list[ResultId] = []
    for result_id in observed:
        if not result_id or result_id in seen:
            continue
        if is_valid is not None and not is_valid(result_id):
            continue
        seen.add(result_id)
        ordered.append(result_id)
    return tuple(ordered)
