"""Exception hierarchy shared by the executor side and the orchestrator."""

from __future__ import annotations


class GenBatchError(Exception):
    """Base class for all genbatch errors."""


class SubmitError(GenBatchError):
    """Input injection was rejected by the executor surface."""


class FetchError(GenBatchError):
    """A result handle could not be materialized into a payload."""


class StoreError(GenBatchError):
    """The artifact sink refused to persist a payload."""


class StabilityTimeoutError(GenBatchError, TimeoutError):
    """Observed results never converged before the deadline."""

    def __init__(self, message: str, *, last_observed: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.last_observed = last_observed


class CancelledError(GenBatchError):
    """Cooperative cancellation was observed."""


class TransportError(GenBatchError):
    """Base class for message channel failures."""


class TransportTimeoutError(TransportError):
    """No response arrived within the per-request ceiling."""


class TransportDisconnectedError(TransportError):
    """The receiving end of the channel is gone."""


class ExecutorUnavailableError(GenBatchError):
    """No executor could be acquired or re-bound; the run cannot continue."""
