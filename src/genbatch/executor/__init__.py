"""Executor side: job processing, message channel and remote bindings."""

from genbatch.executor.base import (
    Ack,
    CancelRequest,
    ExecutorTransport,
    PingRequest,
    ProcessJobRequest,
    ResetDedupRequest,
)
from genbatch.executor.local import LocalExecutorTransport
from genbatch.executor.processor import ExecutorBindings, JobProcessor

__all__ = [
    "Ack",
    "CancelRequest",
    "ExecutorBindings",
    "ExecutorTransport",
    "JobProcessor",
    "LocalExecutorTransport",
    "PingRequest",
    "ProcessJobRequest",
    "ResetDedupRequest",
]
