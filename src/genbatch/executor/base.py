"""Capability interfaces and channel messages for the executor side."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from genbatch.config import RunSettings
from genbatch.models import Job, JobOutcome, Payload, StoreResult


class InputInjector(Protocol):
    """Places one input into the executor's pending-work surface."""

    def submit(self, text: str) -> None:
        """Submit input; raise SubmitError when it is rejected."""


class ResultObserver(Protocol):
    """Lists currently visible result handles in presentation order."""

    def observe(self) -> Sequence[str]:
        """Return result identifiers; must be cheap and safe to repeat."""


class ResultFetcher(Protocol):
    """Materializes a result handle into a transferable payload."""

    def fetch(self, result_id: str) -> Payload:
        """Fetch one result; raise FetchError on failure."""


class ArtifactSink(Protocol):
    """Persists payloads under a name, uniquifying on conflict."""

    def store(self, payload: Payload, name: str) -> StoreResult:
        """Store a payload and report the artifact id or the failure reason."""


class DedupIndex(Protocol):
    """Set of result identifiers that were already stored."""

    def contains(self, result_id: str) -> bool: ...

    def add(self, result_id: str, *, artifact_id: str | None = None) -> None: ...

    def clear(self) -> None: ...


@dataclass(slots=True, frozen=True)
class PingRequest:
    """Liveness probe."""


@dataclass(slots=True, frozen=True)
class ProcessJobRequest:
    """Run the full pipeline for one job."""

    job: Job
    settings: RunSettings


@dataclass(slots=True, frozen=True)
class CancelRequest:
    """Ask the executor to stop in-flight polling."""


@dataclass(slots=True, frozen=True)
class ResetDedupRequest:
    """Clear the executor's dedup history at the start of a fresh batch."""


ExecutorRequest = PingRequest | ProcessJobRequest | CancelRequest | ResetDedupRequest


@dataclass(slots=True, frozen=True)
class Ack:
    """Response to control messages."""

    ok: bool = True
    message: str = ""


ExecutorResponse = Ack | JobOutcome


class ExecutorTransport(Protocol):
    """Request/response channel to a single executor.

    Every failure of the channel surfaces as TransportTimeoutError or
    TransportDisconnectedError; ``rebind`` raises ExecutorUnavailableError.
    """

    def open(self) -> None: ...

    def send(self, request: ExecutorRequest, *, timeout_seconds: float) -> ExecutorResponse: ...

    def probe(self) -> bool: ...

    def rebind(self) -> None: ...

    def close(self) -> None: ...
