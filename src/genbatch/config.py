"""Runtime configuration for batch runs, executor binding and orchestration."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

RETRY_DELAY_FLOOR_MS = 500
REQUEST_TIMEOUT_MARGIN_SECONDS = 10.0
DEFAULT_NAMING_TEMPLATE = "{prefix}_{n}.png"


@dataclass(slots=True, frozen=True)
class RunSettings:
    """Per-run knobs, frozen once a run starts."""

    max_retries: int = 3
    retry_delay_ms: int = 3_000
    between_jobs_ms: int = 1_000
    target_result_count: int = 2
    stability_checks_required: int = 8
    stability_poll_ms: int = 2_000
    stability_timeout_ms: int = 90_000
    confirm_grace_ms: int = 2_000
    post_submit_delay_ms: int = 5_000
    fetch_attempts: int = 3
    fetch_retry_delay_ms: int = 1_000
    naming_template: str = DEFAULT_NAMING_TEMPLATE
    naming_prefix: str = "batch"

    def validate(self) -> None:
        """Raise configuration error if any knob is out of range."""

        if self.max_retries < 1:
            raise ValueError("GENBATCH_MAX_RETRIES must be >= 1.")
        if self.retry_delay_ms < RETRY_DELAY_FLOOR_MS:
            raise ValueError(f"GENBATCH_RETRY_DELAY_MS must be >= {RETRY_DELAY_FLOOR_MS}.")
        if self.between_jobs_ms < 0:
            raise ValueError("GENBATCH_BETWEEN_JOBS_MS must be >= 0.")
        if self.target_result_count < 1:
            raise ValueError("GENBATCH_TARGET_RESULT_COUNT must be >= 1.")
        if self.stability_checks_required < 1:
            raise ValueError("GENBATCH_STABILITY_CHECKS_REQUIRED must be >= 1.")
        if self.stability_poll_ms <= 0:
            raise ValueError("GENBATCH_STABILITY_POLL_MS must be > 0.")
        if self.stability_timeout_ms <= 0:
            raise ValueError("GENBATCH_STABILITY_TIMEOUT_MS must be > 0.")
        if self.confirm_grace_ms < 0 or self.post_submit_delay_ms < 0:
            raise ValueError("Grace and post-submit delays must be >= 0.")
        if self.fetch_attempts < 1:
            raise ValueError("GENBATCH_FETCH_ATTEMPTS must be >= 1.")
        if self.fetch_retry_delay_ms < 0:
            raise ValueError("GENBATCH_FETCH_RETRY_DELAY_MS must be >= 0.")
        if "{n}" not in self.naming_template:
            raise ValueError(
                f"Invalid GENBATCH_NAMING_TEMPLATE {self.naming_template!r}: "
                "the template must contain {n}.",
            )

    def job_budget_seconds(self) -> float:
        """Longest one job can keep the executor busy, network time excluded.

        Covers the post-submit delay, a stability wait that overshoots its timeout
        by one poll, the confirmation grace and the waits between fetch and store
        retries.
        """

        step_retry_ms = 2 * (self.fetch_attempts - 1) * self.fetch_retry_delay_ms
        total_ms = (
            self.post_submit_delay_ms
            + self.stability_timeout_ms
            + self.stability_poll_ms
            + self.confirm_grace_ms
            + step_retry_ms
        )
        return total_ms / 1000

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunSettings:
        """Build settings from a persisted mapping, ignoring unknown keys."""

        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in known})


@dataclass(slots=True)
class ExecutorSettings:
    """Remote executor binding settings."""

    base_url: str = "http://127.0.0.1:8765"
    # None derives the per-job request timeout from the run settings.
    request_timeout_seconds: float | None = None
    probe_timeout_seconds: float = 5.0
    max_consecutive_disconnects: int = 3
    http_timeout_seconds: float = 30.0


@dataclass(slots=True)
class OrchestratorSettings:
    """Run-loop settings that are not part of a batch's RunSettings."""

    settle_seconds: float = 2.0
    log_capacity: int = 1_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".genbatch.db")
    output_dir: Path = Path("artifacts")
    sqlite_busy_timeout_ms: int = 5_000
    run: RunSettings = field(default_factory=RunSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("GENBATCH_DB_PATH", ".genbatch.db")),
            output_dir=Path(os.getenv("GENBATCH_OUTPUT_DIR", "artifacts")),
            sqlite_busy_timeout_ms=int(os.getenv("GENBATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            run=RunSettings(
                max_retries=int(os.getenv("GENBATCH_MAX_RETRIES", "3")),
                retry_delay_ms=int(os.getenv("GENBATCH_RETRY_DELAY_MS", "3000")),
                between_jobs_ms=int(os.getenv("GENBATCH_BETWEEN_JOBS_MS", "1000")),
                target_result_count=int(os.getenv("GENBATCH_TARGET_RESULT_COUNT", "2")),
                stability_checks_required=int(
                    os.getenv("GENBATCH_STABILITY_CHECKS_REQUIRED", "8"),
                ),
                stability_poll_ms=int(os.getenv("GENBATCH_STABILITY_POLL_MS", "2000")),
                stability_timeout_ms=int(os.getenv("GENBATCH_STABILITY_TIMEOUT_MS", "90000")),
                confirm_grace_ms=int(os.getenv("GENBATCH_CONFIRM_GRACE_MS", "2000")),
                post_submit_delay_ms=int(os.getenv("GENBATCH_POST_SUBMIT_DELAY_MS", "5000")),
                fetch_attempts=int(os.getenv("GENBATCH_FETCH_ATTEMPTS", "3")),
                fetch_retry_delay_ms=int(os.getenv("GENBATCH_FETCH_RETRY_DELAY_MS", "1000")),
                naming_template=os.getenv("GENBATCH_NAMING_TEMPLATE", DEFAULT_NAMING_TEMPLATE),
                naming_prefix=os.getenv("GENBATCH_NAMING_PREFIX", "batch"),
            ),
            executor=ExecutorSettings(
                base_url=os.getenv("GENBATCH_EXECUTOR_URL", "http://127.0.0.1:8765"),
                request_timeout_seconds=_env_float_or_none("GENBATCH_REQUEST_TIMEOUT_SECONDS"),
                probe_timeout_seconds=float(os.getenv("GENBATCH_PROBE_TIMEOUT_SECONDS", "5.0")),
                max_consecutive_disconnects=int(
                    os.getenv("GENBATCH_MAX_CONSECUTIVE_DISCONNECTS", "3"),
                ),
                http_timeout_seconds=float(os.getenv("GENBATCH_HTTP_TIMEOUT_SECONDS", "30.0")),
            ),
            orchestrator=OrchestratorSettings(
                settle_seconds=float(os.getenv("GENBATCH_SETTLE_SECONDS", "2.0")),
                log_capacity=int(os.getenv("GENBATCH_LOG_CAPACITY", "1000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if executor or loop settings are invalid."""

        self.run.validate()
        _validate_executor_url(self.executor.base_url)
        self.validate_request_timeout(self.run)
        if self.executor.probe_timeout_seconds <= 0:
            raise ValueError("GENBATCH_PROBE_TIMEOUT_SECONDS must be > 0.")
        if self.executor.max_consecutive_disconnects < 1:
            raise ValueError("GENBATCH_MAX_CONSECUTIVE_DISCONNECTS must be >= 1.")
        if self.orchestrator.settle_seconds < 0:
            raise ValueError("GENBATCH_SETTLE_SECONDS must be >= 0.")
        if self.orchestrator.log_capacity < 1:
            raise ValueError("GENBATCH_LOG_CAPACITY must be >= 1.")

    def request_timeout_for(self, run: RunSettings) -> float:
        """Per-job request timeout: the explicit value, or the job budget plus a margin."""

        if self.executor.request_timeout_seconds is not None:
            return self.executor.request_timeout_seconds
        return run.job_budget_seconds() + REQUEST_TIMEOUT_MARGIN_SECONDS

    def validate_request_timeout(self, run: RunSettings) -> None:
        timeout = self.executor.request_timeout_seconds
        if timeout is None:
            return
        if timeout <= 0:
            raise ValueError("GENBATCH_REQUEST_TIMEOUT_SECONDS must be > 0.")
        budget = run.job_budget_seconds()
        if timeout < budget:
            raise ValueError(
                f"GENBATCH_REQUEST_TIMEOUT_SECONDS={timeout:g} is shorter than one job can "
                f"take ({budget:g}s). Raise it or unset it to derive it from the run settings.",
            )


def _env_float_or_none(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return float(value)


def _validate_executor_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid GENBATCH_EXECUTOR_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
