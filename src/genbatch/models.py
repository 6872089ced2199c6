"""Domain models for batch jobs, executor outcomes and run events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class RunStatus(str, Enum):
    """Orchestrator run state."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


class JobState(str, Enum):
    """Executor-side job processing states."""

    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_STABILITY = "awaiting_stability"
    FETCHING = "fetching"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OutcomeStatus(str, Enum):
    """Result of one job dispatch as reported by the executor."""

    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    BUSY = "busy"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    SUBMIT_FAILED = "submit_failed"
    STABILITY_TIMEOUT = "stability_timeout"
    FETCH_FAILED = "fetch_failed"
    STORE_FAILED = "store_failed"
    TRANSPORT_TIMEOUT = "transport_timeout"
    TRANSPORT_DISCONNECTED = "transport_disconnected"
    EXECUTOR_UNAVAILABLE = "executor_unavailable"


class EventKind(str, Enum):
    """Kinds of events streamed by the orchestrator."""

    PROGRESS = "progress"
    LOG = "log"
    STATUS = "status"


@dataclass(slots=True, frozen=True)
class Job:
    """One unit of work: an input to submit and one artifact to persist."""

    index: int
    input: str


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Durable pointer to the next unprocessed job (0-based)."""

    next_index: int = 0


@dataclass(slots=True)
class Payload:
    """Transferable content of one fetched result."""

    data: bytes
    media_type: str = "application/octet-stream"
    source_id: str = ""


@dataclass(slots=True)
class StoreResult:
    """Artifact sink response."""

    ok: bool
    artifact_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class JobOutcome:
    """Final outcome of one job dispatch on the executor."""

    status: OutcomeStatus
    job_index: int
    result_id: str | None = None
    artifact_id: str | None = None
    failure_class: FailureClass | None = None
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {OutcomeStatus.COMPLETED, OutcomeStatus.DUPLICATE}

    def describe(self) -> str:
        """Short operator-facing description."""

        if self.status == OutcomeStatus.FAILED:
            failure = self.failure_class.value if self.failure_class else "unknown"
            return f"failed ({failure}): {self.reason or 'no reason given'}"
        if self.status == OutcomeStatus.COMPLETED:
            return f"completed, stored {self.artifact_id}"
        if self.status == OutcomeStatus.DUPLICATE:
            return "completed, result already stored"
        return self.status.value


@dataclass(slots=True)
class RunEvent:
    """Progress, log or status event emitted during a run."""

    kind: EventKind
    text: str = ""
    done: int | None = None
    total: int | None = None
    status: RunStatus | None = None
    level: str = "info"

    def render(self) -> str:
        if self.kind == EventKind.PROGRESS:
            return self.text or f"Progress {self.done}/{self.total}"
        if self.kind == EventKind.STATUS and self.status is not None:
            return f"Status: {self.status.value}"
        return self.text


@dataclass(slots=True)
class RunSummary:
    """Aggregate run counters for CLI reporting."""

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    duplicates: int = 0
    skipped: int = 0
    retries: int = 0
    stopped: bool = False
    aborted: bool = False


@dataclass(slots=True)
class RunStateView:
    """Persisted run state row."""

    next_index: int
    status: RunStatus
    stop_requested: bool
    updated_at: datetime | None


@dataclass(slots=True)
class SkippedJobView:
    """Job abandoned after retry exhaustion."""

    job_index: int
    reason: str
    skipped_at: datetime


@dataclass(slots=True)
class LogLineView:
    """One persisted operator log line."""

    log_id: int
    created_at: datetime
    level: str
    message: str
