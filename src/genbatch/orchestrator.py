"""Job-queue driver: checkpointed, retrying, cancellable batch runs.

The orchestrator never looks at result handles. It sends one job at a time to
the executor over an ``ExecutorTransport`` and only reasons about the outcome:

- success (``completed`` or ``duplicate``) advances the checkpoint;
- ``busy``, ``failed`` and channel timeouts consume a retry slot;
- a disconnection triggers one re-bind before the next retry;
- retry exhaustion records a skip and still advances the checkpoint, so one
  stuck job never blocks the batch;
- an executor that cannot be (re)acquired aborts the run with the checkpoint
  left where it was.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from genbatch.config import REQUEST_TIMEOUT_MARGIN_SECONDS, RunSettings
from genbatch.errors import (
    ExecutorUnavailableError,
    TransportDisconnectedError,
    TransportError,
    TransportTimeoutError,
)
from genbatch.executor.base import (
    CancelRequest,
    ExecutorTransport,
    ProcessJobRequest,
    ResetDedupRequest,
)
from genbatch.models import (
    EventKind,
    FailureClass,
    Job,
    JobOutcome,
    OutcomeStatus,
    RunEvent,
    RunStatus,
    RunSummary,
)
from genbatch.polling import CancellationToken, Sleeper
from genbatch.repository import BatchRepository

logger = logging.getLogger(__name__)

EventObserver = Callable[[RunEvent], None]
EventStream = Iterator[RunEvent]

DEFAULT_SETTLE_SECONDS = 2.0
CONTROL_TIMEOUT_SECONDS = 5.0


class Orchestrator:
    """Owns the job queue, the checkpoint and the executor lifecycle."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: BatchRepository,
        transport: ExecutorTransport,
        request_timeout_seconds: float | None = None,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        max_consecutive_disconnects: int = 3,
        observers: Sequence[EventObserver] = (),
        sleep: Sleeper | None = None,
    ) -> None:
        self.repository = repository
        self.transport = transport
        self.request_timeout_seconds = request_timeout_seconds
        self._job_timeout_seconds = 0.0
        self.settle_seconds = settle_seconds
        self.max_consecutive_disconnects = max_consecutive_disconnects
        self._observers = list(observers)
        self._sleep = sleep
        self._stop = CancellationToken()
        self._state_lock = threading.Lock()
        self._status = RunStatus.IDLE
        self._consecutive_disconnects = 0
        self.summary = RunSummary()

    @property
    def status(self) -> RunStatus:
        return self._status

    def add_observer(self, observer: EventObserver) -> None:
        self._observers.append(observer)

    def run(
        self,
        jobs: Sequence[Job] | None = None,
        settings: RunSettings | None = None,
    ) -> EventStream:
        """Process the batch from the checkpoint, yielding events as they happen.

        Jobs and settings passed here replace the persisted batch; when omitted
        the persisted ones are resumed.
        """

        with self._state_lock:
            if self._status != RunStatus.IDLE:
                raise RuntimeError("A run is already in progress.")
            self._status = RunStatus.RUNNING
        self._stop.reset()
        self._consecutive_disconnects = 0
        self.summary = RunSummary()
        try:
            yield from self._run(jobs=jobs, settings=settings)
        finally:
            self.transport.close()
            with self._state_lock:
                self._status = RunStatus.IDLE
            self.repository.set_status(RunStatus.IDLE)

    def run_to_completion(
        self,
        jobs: Sequence[Job] | None = None,
        settings: RunSettings | None = None,
    ) -> RunSummary:
        for _ in self.run(jobs=jobs, settings=settings):
            pass
        return self.summary

    def stop(self) -> None:
        """Request a graceful stop; the in-flight store is allowed to finish."""

        with self._state_lock:
            if self._status == RunStatus.RUNNING:
                self._status = RunStatus.STOPPING
        self._stop.cancel()
        try:
            self.transport.send(CancelRequest(), timeout_seconds=CONTROL_TIMEOUT_SECONDS)
        except TransportError as error:
            logger.debug("Cancel message not delivered: %s", error)

    def reset(self) -> None:
        """Rewind the batch to its first job and forget dedup history."""

        if self._status != RunStatus.IDLE:
            raise RuntimeError("Cannot reset while a run is in progress.")
        self.repository.reset()
        self._record(RunEvent(kind=EventKind.LOG, text="Reset done"))

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        """Turn SIGINT/SIGTERM into a graceful stop for the duration of a run."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current step", name)
            # stop() talks to the executor channel; keep the handler itself lock-free.
            threading.Thread(target=self.stop, name="genbatch-stop", daemon=True).start()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    def _run(self, *, jobs: Sequence[Job] | None, settings: RunSettings | None) -> EventStream:
        yield self._status_event(RunStatus.RUNNING)
        self.repository.set_status(RunStatus.RUNNING)
        self.repository.clear_stop_request()

        batch, run_settings = self._load_batch(jobs=jobs, settings=settings)
        self._job_timeout_seconds = self._job_timeout(run_settings)
        total = len(batch)
        self.summary.total = total
        checkpoint = self.repository.get_checkpoint()
        if checkpoint.next_index >= total:
            yield self._log(f"Nothing to process: checkpoint at {checkpoint.next_index}/{total}")
            yield self._status_event(RunStatus.IDLE)
            return

        yield self._progress(checkpoint.next_index, total)
        try:
            yield from self._acquire_executor()
            if checkpoint.next_index == 0:
                yield from self._reset_dedup()
            else:
                yield self._log(f"Resuming at job {checkpoint.next_index + 1}/{total}")

            for position in range(checkpoint.next_index, total):
                if self._should_stop():
                    yield self._log("Abort requested")
                    self.summary.stopped = True
                    break

                job = batch[position]
                yield self._log(f"Processing {job.index}/{total}: {job.input}")
                yield from self._ensure_executor()
                outcome = yield from self._attempt_job(job, run_settings)
                if outcome.status == OutcomeStatus.CANCELLED:
                    yield self._log(
                        f"Job {job.index} cancelled; checkpoint stays at {position}/{total}",
                    )
                    self.summary.stopped = True
                    break

                self.summary.processed += 1
                if outcome.succeeded:
                    yield from self._complete_job(position, job, outcome, run_settings, total)
                else:
                    yield from self._skip_job(position, job, outcome, run_settings, total)
        except ExecutorUnavailableError as error:
            self.summary.aborted = True
            yield self._log(f"Executor unavailable, aborting run: {error}", level="error")

        yield self._status_event(RunStatus.IDLE)

    def _load_batch(
        self,
        *,
        jobs: Sequence[Job] | None,
        settings: RunSettings | None,
    ) -> tuple[list[Job], RunSettings]:
        if settings is not None:
            settings.validate()
            self.repository.save_settings(settings)
        if jobs is not None:
            self.repository.replace_jobs(jobs)

        run_settings = settings or self.repository.load_settings() or RunSettings()
        run_settings.validate()
        batch = list(jobs) if jobs is not None else self.repository.load_jobs()
        return batch, run_settings

    def _attempt_job(self, job: Job, settings: RunSettings) -> Iterator[RunEvent]:
        last_reason = "no attempt completed"
        last_failure: FailureClass | None = None
        for attempt in range(1, settings.max_retries + 1):
            if self._should_stop():
                return JobOutcome(status=OutcomeStatus.CANCELLED, job_index=job.index)
            yield self._log(f"Submit attempt {attempt} for job {job.index}")

            response = None
            try:
                response = self.transport.send(
                    ProcessJobRequest(job=job, settings=settings),
                    timeout_seconds=self._job_timeout_seconds,
                )
                self._consecutive_disconnects = 0
            except TransportDisconnectedError as error:
                last_reason = f"connection lost: {error}"
                last_failure = FailureClass.TRANSPORT_DISCONNECTED
                yield self._log(f"Connection lost for job {job.index}: {error}", level="warning")
                yield from self._handle_disconnect(error)
            except TransportTimeoutError as error:
                last_reason = f"no response: {error}"
                last_failure = FailureClass.TRANSPORT_TIMEOUT
                yield self._log(
                    f"Job {job.index} attempt {attempt} failed: {error}",
                    level="warning",
                )

            if isinstance(response, JobOutcome):
                if response.succeeded or response.status == OutcomeStatus.CANCELLED:
                    return response
                if response.status == OutcomeStatus.BUSY:
                    yield self._log(f"Job {job.index} not started: executor busy")
                else:
                    last_reason = response.describe()
                    last_failure = response.failure_class
                    yield self._log(f"Job {job.index} {last_reason}", level="warning")
            elif response is not None:
                last_reason = f"unexpected executor response {type(response).__name__}"
                yield self._log(f"Job {job.index}: {last_reason}", level="warning")

            if attempt < settings.max_retries:
                self.summary.retries += 1
                self._pause(settings.retry_delay_ms / 1000)

        return JobOutcome(
            status=OutcomeStatus.FAILED,
            job_index=job.index,
            failure_class=last_failure,
            reason=last_reason,
        )

    def _complete_job(  # noqa: PLR0913
        self,
        position: int,
        job: Job,
        outcome: JobOutcome,
        settings: RunSettings,
        total: int,
    ) -> EventStream:
        if outcome.status == OutcomeStatus.DUPLICATE:
            self.summary.duplicates += 1
        else:
            self.summary.succeeded += 1
        yield self._log(
            f"Job {job.index} {outcome.describe()}. "
            f"Waiting {self.settle_seconds:g}s before moving on...",
        )
        self._pause(self.settle_seconds)
        self.repository.commit_checkpoint(position + 1)
        yield self._progress(position + 1, total)
        if position + 1 < total:
            yield self._log(f"Moving to next job in {settings.between_jobs_ms}ms...")
            self._pause(settings.between_jobs_ms / 1000)

    def _skip_job(  # noqa: PLR0913
        self,
        position: int,
        job: Job,
        outcome: JobOutcome,
        settings: RunSettings,
        total: int,
    ) -> EventStream:
        self.summary.skipped += 1
        reason = outcome.reason or "unknown failure"
        yield self._log(
            f"Skipping job {job.index} after {settings.max_retries} failed attempts: {reason}",
            level="warning",
        )
        self.repository.record_skip(job_index=job.index, reason=reason)
        self.repository.commit_checkpoint(position + 1)
        yield self._progress(position + 1, total)

    def _acquire_executor(self) -> EventStream:
        yield self._log("Connecting to executor...")
        self.transport.open()
        yield from self._ensure_executor()

    def _ensure_executor(self) -> EventStream:
        if self.transport.probe():
            return
        yield self._log("Executor not responding, re-binding...", level="warning")
        yield from self._rebind()

    def _handle_disconnect(self, error: TransportDisconnectedError) -> EventStream:
        self._consecutive_disconnects += 1
        if self._consecutive_disconnects > self.max_consecutive_disconnects:
            raise ExecutorUnavailableError(
                f"Executor disconnected {self._consecutive_disconnects} times in a row",
            ) from error
        yield from self._rebind()

    def _rebind(self) -> EventStream:
        self.transport.rebind()
        yield self._log("Executor re-bound")

    def _reset_dedup(self) -> EventStream:
        yield self._log("Fresh batch: clearing dedup history")
        try:
            self.transport.send(ResetDedupRequest(), timeout_seconds=self._job_timeout_seconds)
        except TransportError as error:
            yield self._log(
                f"Dedup reset not acknowledged ({error}), re-binding...",
                level="warning",
            )
            yield from self._rebind()
            try:
                self.transport.send(
                    ResetDedupRequest(),
                    timeout_seconds=self._job_timeout_seconds,
                )
            except TransportError as retry_error:
                raise ExecutorUnavailableError(
                    f"Could not reset dedup history: {retry_error}",
                ) from retry_error

    def _job_timeout(self, settings: RunSettings) -> float:
        budget = settings.job_budget_seconds()
        if self.request_timeout_seconds is None:
            return budget + REQUEST_TIMEOUT_MARGIN_SECONDS
        if self.request_timeout_seconds < budget:
            logger.warning(
                "Request timeout %.1fs is shorter than the %.1fs a job may take; "
                "long jobs will come back as timeouts and then as busy",
                self.request_timeout_seconds,
                budget,
            )
        return self.request_timeout_seconds

    def _should_stop(self) -> bool:
        if self._stop.cancelled:
            return True
        if self.repository.stop_requested():
            self.repository.clear_stop_request()
            with self._state_lock:
                self._status = RunStatus.STOPPING
            self._stop.cancel()
            return True
        return False

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._stop.wait(seconds)

    def _log(self, text: str, *, level: str = "info") -> RunEvent:
        return self._record(RunEvent(kind=EventKind.LOG, text=text, level=level))

    def _progress(self, done: int, total: int) -> RunEvent:
        return self._record(
            RunEvent(
                kind=EventKind.PROGRESS,
                done=done,
                total=total,
                text=f"Progress {done}/{total}",
            ),
        )

    def _status_event(self, status: RunStatus) -> RunEvent:
        return self._record(RunEvent(kind=EventKind.STATUS, status=status))

    def _record(self, event: RunEvent) -> RunEvent:
        text = event.render()
        logger.log(logging.getLevelName(event.level.upper()), "%s", text)
        self.repository.append_log(text, level=event.level)
        for observer in self._observers:
            observer(event)
        return event
