"""Executor-side pipeline for one job: submit, settle, pick, fetch, store."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from genbatch.config import RunSettings
from genbatch.errors import (
    CancelledError,
    FetchError,
    StabilityTimeoutError,
    StoreError,
    SubmitError,
)
from genbatch.executor.base import (
    ArtifactSink,
    DedupIndex,
    InputInjector,
    ResultFetcher,
    ResultObserver,
)
from genbatch.models import (
    FailureClass,
    Job,
    JobOutcome,
    JobState,
    OutcomeStatus,
    Payload,
    StoreResult,
)
from genbatch.polling import CancellationToken, Clock, RetryPolicy, Sleeper, retry_call
from genbatch.sink import render_artifact_name
from genbatch.stability import StabilityDetector

logger = logging.getLogger(__name__)

TransitionHook = Callable[[int, JobState, JobState], None]


@dataclass(slots=True)
class ExecutorBindings:
    """Concrete collaborators the processor drives."""

    injector: InputInjector
    observer: ResultObserver
    fetcher: ResultFetcher
    sink: ArtifactSink
    is_valid: Callable[[str], bool] | None = None


class JobProcessor:
    """Runs at most one job at a time against one executor surface."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        bindings: ExecutorBindings,
        dedup: DedupIndex,
        clock: Clock = time.monotonic,
        sleep: Sleeper | None = None,
        on_transition: TransitionHook | None = None,
    ) -> None:
        self.bindings = bindings
        self.dedup = dedup
        self._clock = clock
        self._sleep = sleep
        self._on_transition = on_transition
        self._guard = threading.Lock()
        self._cancel = CancellationToken()
        self._state = JobState.IDLE

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._guard.locked()

    def cancel(self) -> None:
        """Stop in-flight polling at its next iteration; stores are never interrupted."""

        self._cancel.cancel()
        logger.info("Cancel signal received")

    def reset_dedup(self) -> None:
        self.dedup.clear()
        logger.info("Dedup history cleared for a new batch")

    def process(self, job: Job, settings: RunSettings) -> JobOutcome:
        """Run the pipeline, or report Busy when another job is in flight."""

        if not self._guard.acquire(blocking=False):
            logger.info("Job %d rejected: executor already processing", job.index)
            return JobOutcome(
                status=OutcomeStatus.BUSY,
                job_index=job.index,
                reason="Already processing",
            )
        try:
            logger.info("Starting job %d", job.index)
            return self._run_pipeline(job, settings)
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %d failed unexpectedly", job.index)
            self._transition(job.index, JobState.FAILED)
            return JobOutcome(
                status=OutcomeStatus.FAILED,
                job_index=job.index,
                reason=f"Unexpected error: {error}",
            )
        finally:
            # A cancel that arrived while idle is kept for the next job; one job consumes it.
            self._cancel.reset()
            self._state = JobState.IDLE
            self._guard.release()

    def _run_pipeline(self, job: Job, settings: RunSettings) -> JobOutcome:  # noqa: PLR0911
        try:
            self._cancel.raise_if_cancelled()
            self._transition(job.index, JobState.SUBMITTING)
            try:
                self.bindings.injector.submit(job.input)
            except SubmitError as error:
                return self._fail(
                    job,
                    FailureClass.SUBMIT_FAILED,
                    f"Failed to submit input: {error}",
                )

            self._transition(job.index, JobState.AWAITING_STABILITY)
            self._wait(settings.post_submit_delay_ms / 1000)
            self._cancel.raise_if_cancelled()
            detector = StabilityDetector(
                confirm_grace_seconds=settings.confirm_grace_ms / 1000,
                clock=self._clock,
                sleep=self._sleep,
            )
            try:
                settled = detector.await_stable(
                    self.bindings.observer.observe,
                    target_count=settings.target_result_count,
                    required_stable_checks=settings.stability_checks_required,
                    poll_interval_seconds=settings.stability_poll_ms / 1000,
                    timeout_seconds=settings.stability_timeout_ms / 1000,
                    cancel=self._cancel,
                    is_valid=self.bindings.is_valid,
                )
            except StabilityTimeoutError as error:
                return self._fail(job, FailureClass.STABILITY_TIMEOUT, str(error))

            canonical = settled[0]
            if self.dedup.contains(canonical):
                logger.info("Job %d: result %s already stored, skipping", job.index, canonical)
                self._transition(job.index, JobState.COMPLETED)
                return JobOutcome(
                    status=OutcomeStatus.DUPLICATE,
                    job_index=job.index,
                    result_id=canonical,
                )

            self._cancel.raise_if_cancelled()
            self._transition(job.index, JobState.FETCHING)
            retry_policy = RetryPolicy(
                interval_seconds=settings.fetch_retry_delay_ms / 1000,
                max_attempts=settings.fetch_attempts,
            )
            try:
                payload = retry_call(
                    lambda: self.bindings.fetcher.fetch(canonical),
                    retry_policy,
                    retry_on=(FetchError,),
                    cancel=self._cancel,
                    sleep=self._sleep,
                    on_retry=_log_retry(job.index, "fetch"),
                )
            except FetchError as error:
                return self._fail(job, FailureClass.FETCH_FAILED, f"Fetch failed: {error}")
        except CancelledError:
            self._transition(job.index, JobState.CANCELLED)
            return JobOutcome(
                status=OutcomeStatus.CANCELLED,
                job_index=job.index,
                reason="Cancelled",
            )

        self._transition(job.index, JobState.STORING)
        name = render_artifact_name(
            job.index,
            template=settings.naming_template,
            prefix=settings.naming_prefix,
        )
        try:
            stored = retry_call(
                lambda: self._store_once(payload, name),
                retry_policy,
                retry_on=(StoreError,),
                sleep=self._sleep,
                on_retry=_log_retry(job.index, "store"),
            )
        except StoreError as error:
            return self._fail(job, FailureClass.STORE_FAILED, f"Store failed: {error}")

        self._record_stored(job, canonical, stored, retry_policy)
        self._transition(job.index, JobState.COMPLETED)
        return JobOutcome(
            status=OutcomeStatus.COMPLETED,
            job_index=job.index,
            result_id=canonical,
            artifact_id=stored.artifact_id,
        )

    def _record_stored(
        self,
        job: Job,
        result_id: str,
        stored: StoreResult,
        retry_policy: RetryPolicy,
    ) -> None:
        """Add a stored result to the dedup index; the artifact already exists either way."""

        try:
            retry_call(
                lambda: self.dedup.add(result_id, artifact_id=stored.artifact_id),
                retry_policy,
                retry_on=(Exception,),
                sleep=self._sleep,
                on_retry=_log_retry(job.index, "dedup record"),
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Job %d: stored %s but could not record result %s for dedup",
                job.index,
                stored.artifact_id,
                result_id,
            )

    def _store_once(self, payload: Payload, name: str) -> StoreResult:
        stored = self.bindings.sink.store(payload, name)
        if not stored.ok:
            raise StoreError(stored.error or "sink reported failure")
        return stored

    def _fail(self, job: Job, failure_class: FailureClass, reason: str) -> JobOutcome:
        logger.warning("Job %d failed (%s): %s", job.index, failure_class.value, reason)
        self._transition(job.index, JobState.FAILED)
        return JobOutcome(
            status=OutcomeStatus.FAILED,
            job_index=job.index,
            failure_class=failure_class,
            reason=reason,
        )

    def _transition(self, job_index: int, state: JobState) -> None:
        previous = self._state
        self._state = state
        logger.info("Job %d: %s -> %s", job_index, previous.value, state.value)
        if self._on_transition is not None:
            self._on_transition(job_index, previous, state)

    def _wait(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._cancel.wait(seconds)


def _log_retry(job_index: int, step: str) -> Callable[[int, BaseException], None]:
    def _log(attempt: int, error: BaseException) -> None:
        logger.warning("Job %d: %s attempt %d failed: %s", job_index, step, attempt, error)

    return _log
