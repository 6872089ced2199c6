"""Controllers for batch CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from genbatch.config import Settings
from genbatch.executor.http import HttpGenerationClient
from genbatch.executor.local import LocalExecutorTransport
from genbatch.executor.processor import ExecutorBindings, JobProcessor
from genbatch.jobs_csv import load_jobs_csv
from genbatch.models import RunEvent, RunStatus
from genbatch.orchestrator import Orchestrator
from genbatch.repository import BatchRepository
from genbatch.sink import FileSystemArtifactSink

LineSink = Callable[[str], None]


@dataclass(slots=True)
class LoadJobsCommand:
    """CLI inputs for jobs load command."""

    db_path: Path | None
    csv_path: Path


@dataclass(slots=True)
class ListJobsCommand:
    """CLI inputs for jobs list command."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class RunBatchCommand:
    """CLI inputs for run command."""

    db_path: Path | None
    output_dir: Path | None = None
    force: bool = False


@dataclass(slots=True)
class StopBatchCommand:
    db_path: Path | None


@dataclass(slots=True)
class StatusCommand:
    """CLI inputs for status command."""

    db_path: Path | None
    show_skipped: bool = False


@dataclass(slots=True)
class ResetCommand:
    """CLI inputs for reset command."""

    db_path: Path | None
    keep_jobs: bool = False
    force: bool = False


@dataclass(slots=True)
class LogsCommand:
    """CLI inputs for logs command."""

    db_path: Path | None
    limit: int | None = 50
    export_path: Path | None = None
    clear: bool = False


class BatchCliController:
    """Coordinates job loading, runs and inspection commands."""

    def load_jobs(self, command: LoadJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        jobs = load_jobs_csv(command.csv_path)
        if not jobs:
            raise ValueError(f"No jobs found in {command.csv_path}.")

        with _repository(settings) as repository:
            _ensure_idle(repository, action="load jobs")
            repository.reset(keep_jobs=False)
            repository.replace_jobs(jobs)
            repository.save_settings(settings.run)

        lines = [f"Loaded {len(jobs)} jobs from {command.csv_path}"]
        lines.extend(f"  {job.index}: {_preview(job.input)}" for job in jobs[:3])
        if len(jobs) > 3:
            lines.append(f"  ... and {len(jobs) - 3} more")
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = repository.load_jobs()
            next_index = repository.get_checkpoint().next_index

        if not jobs:
            return ["No jobs loaded."]
        upcoming = next_index + 1 if next_index < len(jobs) else "-"
        lines = [f"Jobs: total={len(jobs)} next={upcoming}"]
        for position, job in enumerate(jobs[: command.limit]):
            marker = "done" if position < next_index else "todo"
            lines.append(f"  [{marker}] {job.index}: {_preview(job.input)}")
        return lines

    def run(self, command: RunBatchCommand, *, emit: LineSink | None = None) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        output_dir = command.output_dir or settings.output_dir

        with _repository(settings) as repository:
            if not command.force:
                _ensure_idle(repository, action="start a run")
            if repository.count_jobs() == 0:
                raise ValueError("No jobs loaded. Use `genbatch jobs load` first.")

            # A fresh batch picks up current settings; a resumed one keeps its frozen copy.
            run_settings = None
            if repository.get_checkpoint().next_index == 0:
                run_settings = settings.run
            effective_settings = run_settings or repository.load_settings() or settings.run
            settings.validate_request_timeout(effective_settings)

            client = HttpGenerationClient(
                settings.executor.base_url,
                timeout_seconds=settings.executor.http_timeout_seconds,
            )
            sink = FileSystemArtifactSink(output_dir)
            dedup = repository.dedup_index()

            def _build_processor() -> JobProcessor:
                return JobProcessor(
                    bindings=ExecutorBindings(
                        injector=client,
                        observer=client,
                        fetcher=client,
                        sink=sink,
                    ),
                    dedup=dedup,
                )

            transport = LocalExecutorTransport(
                _build_processor,
                probe_timeout_seconds=settings.executor.probe_timeout_seconds,
            )
            orchestrator = Orchestrator(
                repository=repository,
                transport=transport,
                request_timeout_seconds=settings.request_timeout_for(effective_settings),
                settle_seconds=settings.orchestrator.settle_seconds,
                max_consecutive_disconnects=settings.executor.max_consecutive_disconnects,
            )
            if emit is not None:
                orchestrator.add_observer(_event_printer(emit))
            try:
                with orchestrator.signal_handlers():
                    summary = orchestrator.run_to_completion(settings=run_settings)
            finally:
                client.close()
            next_index = repository.get_checkpoint().next_index

        outcome = "aborted" if summary.aborted else "stopped" if summary.stopped else "finished"
        return [
            f"Run {outcome}: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"duplicates={summary.duplicates} skipped={summary.skipped} "
            f"retries={summary.retries} checkpoint={next_index}/{summary.total}",
        ]

    def stop(self, command: StopBatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            state = repository.get_run_state()
            if state.status == RunStatus.IDLE:
                return ["No run in progress."]
            repository.request_stop()
        return ["Stop requested; the run halts after its current step."]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            state = repository.get_run_state()
            total = repository.count_jobs()
            dedup_count = repository.dedup_count()
            skipped = repository.list_skipped()
            run_settings = repository.load_settings()
            revision = repository.schema_revision()

        lines = [
            f"Status: {state.status.value}"
            f"{' (stop requested)' if state.stop_requested else ''}",
            f"Progress: {min(state.next_index, total)}/{total}",
            f"Stored results: {dedup_count}",
            f"Skipped jobs: {len(skipped)}",
            f"Schema revision: {revision or 'none'}",
        ]
        if run_settings is not None:
            lines.append(
                "Settings: "
                f"max_retries={run_settings.max_retries} "
                f"retry_delay_ms={run_settings.retry_delay_ms} "
                f"between_jobs_ms={run_settings.between_jobs_ms} "
                f"target_result_count={run_settings.target_result_count} "
                f"stability_checks_required={run_settings.stability_checks_required}",
            )
        if command.show_skipped:
            lines.extend(
                f"  job {item.job_index} at {item.skipped_at.isoformat()}: {item.reason}"
                for item in skipped
            )
        return lines

    def reset(self, command: ResetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if not command.force:
                _ensure_idle(repository, action="reset")
            repository.reset(keep_jobs=command.keep_jobs)
            repository.append_log("Reset done")
        if command.keep_jobs:
            return ["Reset done: checkpoint rewound, jobs kept."]
        return ["Reset done: jobs, checkpoint and dedup history cleared."]

    def logs(self, command: LogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.clear:
                repository.clear_logs()
                return ["Log cleared."]
            entries = repository.recent_logs(limit=None if command.export_path else command.limit)

        rendered = [
            f"[{entry.created_at.strftime('%H:%M:%S')}] {entry.message}" for entry in entries
        ]
        if command.export_path is not None:
            command.export_path.parent.mkdir(parents=True, exist_ok=True)
            command.export_path.write_text(
                "\n".join(rendered) + ("\n" if rendered else ""),
                encoding="utf-8",
            )
            return [f"Exported {len(rendered)} log lines to {command.export_path}"]
        return rendered or ["Log is empty."]


@contextmanager
def _repository(settings: Settings) -> Iterator[BatchRepository]:
    repository = BatchRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        log_capacity=settings.orchestrator.log_capacity,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()


def _ensure_idle(repository: BatchRepository, *, action: str) -> None:
    state = repository.get_run_state()
    if state.status != RunStatus.IDLE:
        raise ValueError(
            f"Cannot {action}: a run is {state.status.value}. "
            "Stop it first, or pass --force after a crash.",
        )


def _event_printer(emit: LineSink) -> Callable[[RunEvent], None]:
    def _print(event: RunEvent) -> None:
        emit(event.render())

    return _print


def _preview(text: str, limit: int = 60) -> str:
    return text if len(text) <= limit else f"{text[: limit - 3]}..."
