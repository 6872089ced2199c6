from __future__ import annotations

import threading
import time

import allure
import pytest

from genbatch.config import RunSettings
from genbatch.errors import (
    ExecutorUnavailableError,
    TransportDisconnectedError,
    TransportTimeoutError,
)
from genbatch.executor.base import (
    Ack,
    CancelRequest,
    PingRequest,
    ProcessJobRequest,
    ResetDedupRequest,
)
from genbatch.executor.dedup import MemoryDedupIndex
from genbatch.executor.local import LocalExecutorTransport
from genbatch.executor.processor import ExecutorBindings, JobProcessor
from genbatch.models import Job, JobOutcome, OutcomeStatus
from tests.fakes import DictFetcher, FakeClock, RecordingInjector, RecordingSink

pytestmark = [
    allure.epic("Batch Generation"),
    allure.feature("Executor Channel"),
]

SETTINGS = RunSettings(
    stability_checks_required=1,
    stability_poll_ms=1_000,
    confirm_grace_ms=0,
    post_submit_delay_ms=0,
)


class _GateObserver:
    """Blocks observation until released, to keep a job in flight."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def observe(self) -> tuple[str, ...]:
        self.entered.set()
        self.release.wait(timeout=5.0)
        return ("img-1", "img-2")


def _factory(observer, dedup: MemoryDedupIndex | None = None):
    shared_dedup = dedup if dedup is not None else MemoryDedupIndex()

    def _build() -> JobProcessor:
        clock = FakeClock()
        return JobProcessor(
            bindings=ExecutorBindings(
                injector=RecordingInjector(),
                observer=observer,
                fetcher=DictFetcher(),
                sink=RecordingSink(),
            ),
            dedup=shared_dedup,
            clock=clock,
            sleep=clock.sleep,
        )

    return _build


def test_send_before_open_reports_missing_receiver() -> None:
    transport = LocalExecutorTransport(_factory(_GateObserver()))

    with pytest.raises(TransportDisconnectedError, match="Receiving end does not exist"):
        transport.send(PingRequest(), timeout_seconds=1.0)


def test_open_binds_once_and_answers_ping() -> None:
    transport = LocalExecutorTransport(_factory(_GateObserver()))
    transport.open()
    transport.open()
    try:
        assert transport.bind_count == 1
        assert transport.probe() is True
        response = transport.send(PingRequest(), timeout_seconds=1.0)
        assert isinstance(response, Ack)
        assert response.ok
    finally:
        transport.close()


def test_job_request_returns_outcome() -> None:
    observer = _GateObserver()
    observer.release.set()
    transport = LocalExecutorTransport(_factory(observer))
    transport.open()
    try:
        response = transport.send(
            ProcessJobRequest(job=Job(index=1, input="x"), settings=SETTINGS),
            timeout_seconds=5.0,
        )
    finally:
        transport.close()

    assert isinstance(response, JobOutcome)
    assert response.status == OutcomeStatus.COMPLETED


def test_timed_out_job_keeps_running_and_retry_sees_busy() -> None:
    observer = _GateObserver()
    transport = LocalExecutorTransport(_factory(observer))
    transport.open()
    request = ProcessJobRequest(job=Job(index=1, input="x"), settings=SETTINGS)
    try:
        with pytest.raises(TransportTimeoutError, match="No response within"):
            transport.send(request, timeout_seconds=0.05)
        assert observer.entered.wait(timeout=5.0)

        retry = transport.send(request, timeout_seconds=5.0)
        assert isinstance(retry, JobOutcome)
        assert retry.status == OutcomeStatus.BUSY
    finally:
        observer.release.set()
        transport.close()


def test_cancel_request_reaches_the_in_flight_job() -> None:
    observer = _GateObserver()
    transport = LocalExecutorTransport(_factory(observer))
    transport.open()
    request = ProcessJobRequest(job=Job(index=1, input="x"), settings=SETTINGS)
    try:
        with pytest.raises(TransportTimeoutError):
            transport.send(request, timeout_seconds=0.05)
        assert observer.entered.wait(timeout=5.0)
        ack = transport.send(CancelRequest(), timeout_seconds=1.0)
        assert isinstance(ack, Ack)
        processor = transport.processor
        assert processor is not None
        observer.release.set()
        # The job sees the cancellation at its next poll step.
        for _ in range(100):
            if not processor.busy:
                break
            time.sleep(0.01)
        assert not processor.busy
    finally:
        observer.release.set()
        transport.close()


def test_reset_dedup_request_clears_the_index() -> None:
    dedup = MemoryDedupIndex(("img-1",))
    transport = LocalExecutorTransport(_factory(_GateObserver(), dedup))
    transport.open()
    try:
        transport.send(ResetDedupRequest(), timeout_seconds=1.0)
    finally:
        transport.close()

    assert len(dedup) == 0


def test_rebind_replaces_the_processor() -> None:
    transport = LocalExecutorTransport(_factory(_GateObserver()))
    transport.open()
    first = transport.processor
    try:
        transport.rebind()
        assert transport.bind_count == 2
        assert transport.processor is not first
        assert transport.probe()
    finally:
        transport.close()


def test_closed_channel_reports_disconnection() -> None:
    transport = LocalExecutorTransport(_factory(_GateObserver()))
    transport.open()
    transport.close()

    assert transport.probe() is False
    with pytest.raises(TransportDisconnectedError):
        transport.send(PingRequest(), timeout_seconds=1.0)


def test_factory_failure_surfaces_as_unavailable_executor() -> None:
    def _broken() -> JobProcessor:
        raise RuntimeError("no executor surface open")

    transport = LocalExecutorTransport(_broken)

    with pytest.raises(ExecutorUnavailableError, match="no executor surface open"):
        transport.open()
    with pytest.raises(ExecutorUnavailableError):
        transport.rebind()
