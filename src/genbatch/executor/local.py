"""In-process executor reached through a thread-pool message channel.

Requests are handled concurrently, the way a remote worker would receive them:
a job request that timed out on the caller side keeps running, so a retried
request meets the processor's single-flight guard and comes back Busy.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable

from genbatch.errors import (
    ExecutorUnavailableError,
    TransportDisconnectedError,
    TransportError,
    TransportTimeoutError,
)
from genbatch.executor.base import (
    Ack,
    CancelRequest,
    ExecutorRequest,
    ExecutorResponse,
    PingRequest,
    ProcessJobRequest,
    ResetDedupRequest,
)
from genbatch.executor.processor import JobProcessor

logger = logging.getLogger(__name__)

ProcessorFactory = Callable[[], JobProcessor]


class LocalExecutorTransport:
    """ExecutorTransport implementation backed by a JobProcessor in worker threads."""

    def __init__(
        self,
        processor_factory: ProcessorFactory,
        *,
        probe_timeout_seconds: float = 5.0,
        max_workers: int = 4,
    ) -> None:
        self._factory = processor_factory
        self.probe_timeout_seconds = probe_timeout_seconds
        self._max_workers = max_workers
        self._lock = threading.Lock()
        self._pool: concurrent.futures.ThreadPoolExecutor | None = None
        self._processor: JobProcessor | None = None
        self.bind_count = 0

    @property
    def processor(self) -> JobProcessor | None:
        return self._processor

    def open(self) -> None:
        with self._lock:
            if self._pool is None:
                self._bind()

    def send(self, request: ExecutorRequest, *, timeout_seconds: float) -> ExecutorResponse:
        with self._lock:
            pool, processor = self._pool, self._processor
        if pool is None or processor is None:
            raise TransportDisconnectedError("Receiving end does not exist")
        try:
            future = pool.submit(_handle_request, processor, request)
        except RuntimeError as error:
            raise TransportDisconnectedError(f"Executor channel closed: {error}") from error
        try:
            return future.result(timeout=timeout_seconds)
        except concurrent.futures.TimeoutError as error:
            raise TransportTimeoutError(
                f"No response within {timeout_seconds:.1f}s",
            ) from error
        except concurrent.futures.CancelledError as error:
            raise TransportDisconnectedError("Executor went away mid-request") from error

    def probe(self) -> bool:
        try:
            response = self.send(PingRequest(), timeout_seconds=self.probe_timeout_seconds)
        except TransportError as error:
            logger.debug("Executor probe failed: %s", error)
            return False
        return isinstance(response, Ack) and response.ok

    def rebind(self) -> None:
        """Replace the executor with a fresh one and verify it answers."""

        with self._lock:
            self._teardown()
            self._bind()
        if not self.probe():
            raise ExecutorUnavailableError("Re-bound executor does not answer ping")
        logger.info("Executor re-bound (binding #%d)", self.bind_count)

    def close(self) -> None:
        with self._lock:
            self._teardown()

    def _bind(self) -> None:
        try:
            processor = self._factory()
        except Exception as error:  # noqa: BLE001
            raise ExecutorUnavailableError(f"Could not start executor: {error}") from error
        self._processor = processor
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="genbatch-executor",
        )
        self.bind_count += 1

    def _teardown(self) -> None:
        if self._processor is not None:
            self._processor.cancel()
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
        self._pool = None
        self._processor = None


def _handle_request(processor: JobProcessor, request: ExecutorRequest) -> ExecutorResponse:
    if isinstance(request, ProcessJobRequest):
        return processor.process(request.job, request.settings)
    if isinstance(request, PingRequest):
        return Ack(message="Executor is ready")
    if isinstance(request, CancelRequest):
        processor.cancel()
        return Ack()
    if isinstance(request, ResetDedupRequest):
        processor.reset_dedup()
        return Ack()
    return Ack(ok=False, message=f"Unsupported request: {type(request).__name__}")
