"""Batch driver for remote, non-deterministic generation executors.

Submits one input per job, waits until the executor's result set settles,
stores one canonical artifact per job and keeps a durable checkpoint so an
interrupted batch resumes where it stopped.
"""

__version__ = "0.1.0"
