"""In-memory dedup index for ephemeral executors."""

from __future__ import annotations

import threading


class MemoryDedupIndex:
    """Thread-safe set of stored result identifiers; lost on process exit."""

    def __init__(self, initial: tuple[str, ...] = ()) -> None:
        self._lock = threading.Lock()
        self._artifacts: dict[str, str | None] = dict.fromkeys(initial)

    def contains(self, result_id: str) -> bool:
        with self._lock:
            return result_id in self._artifacts

    def add(self, result_id: str, *, artifact_id: str | None = None) -> None:
        with self._lock:
            self._artifacts[result_id] = artifact_id

    def clear(self) -> None:
        with self._lock:
            self._artifacts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)
