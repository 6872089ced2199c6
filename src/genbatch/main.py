"""CLI entrypoint for genbatch."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from genbatch import __version__
from genbatch.controllers import (
    BatchCliController,
    ListJobsCommand,
    LoadJobsCommand,
    LogsCommand,
    ResetCommand,
    RunBatchCommand,
    StatusCommand,
    StopBatchCommand,
)
from genbatch.errors import GenBatchError

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="genbatch")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def genbatch(verbose: bool) -> None:
    """Drive batches of generation jobs against an executor, with checkpoints and retries."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@genbatch.group()
def jobs() -> None:
    """Job list commands."""


@jobs.command("load")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_load(csv_path: Path, db_path: Path | None) -> None:
    """Load jobs from a CSV file and start a fresh batch.

    Columns are `scene`, `context`, `style` (or a single `prompt` column);
    a header row is optional.
    """

    _emit_lines(
        _guarded(
            lambda: BATCH_CONTROLLER.load_jobs(
                LoadJobsCommand(db_path=db_path, csv_path=csv_path),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many jobs to display.",
)
def jobs_list(db_path: Path | None, limit: int) -> None:
    """Show loaded jobs and which of them are done."""

    _emit_lines(BATCH_CONTROLLER.list_jobs(ListJobsCommand(db_path=db_path, limit=limit)))


@genbatch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for stored artifacts (default: GENBATCH_OUTPUT_DIR).",
)
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Start even if the stored status says a run is active, for example after a crash.",
)
def run(db_path: Path | None, output_dir: Path | None, force: bool) -> None:
    """Process the loaded batch from its checkpoint.

    Ctrl+C stops gracefully: an artifact being stored is finished first.
    """

    _emit_lines(
        _guarded(
            lambda: BATCH_CONTROLLER.run(
                RunBatchCommand(db_path=db_path, output_dir=output_dir, force=force),
                emit=click.echo,
            ),
        ),
    )


@genbatch.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stop(db_path: Path | None) -> None:
    """Ask a run in another process to stop after its current step."""

    _emit_lines(BATCH_CONTROLLER.stop(StopBatchCommand(db_path=db_path)))


@genbatch.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--skipped", "show_skipped", is_flag=True, default=False, help="List skipped jobs.")
def status(db_path: Path | None, show_skipped: bool) -> None:
    """Show run status, progress and skipped jobs."""

    _emit_lines(
        BATCH_CONTROLLER.status(StatusCommand(db_path=db_path, show_skipped=show_skipped)),
    )


@genbatch.command("reset")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--keep-jobs", is_flag=True, default=False, help="Keep the loaded job list.")
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Reset even if the stored status says a run is active.",
)
@click.confirmation_option(prompt="Rewind the batch and forget stored results?")
def reset(db_path: Path | None, keep_jobs: bool, force: bool) -> None:
    """Rewind the checkpoint and clear dedup history."""

    _emit_lines(
        _guarded(
            lambda: BATCH_CONTROLLER.reset(
                ResetCommand(db_path=db_path, keep_jobs=keep_jobs, force=force),
            ),
        ),
    )


@genbatch.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="How many recent lines to show.",
)
@click.option(
    "--export",
    "export_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the whole retained log to a file.",
)
@click.option("--clear", is_flag=True, default=False, help="Delete all retained log lines.")
def logs(db_path: Path | None, limit: int, export_path: Path | None, clear: bool) -> None:
    """Show, export or clear the run log."""

    _emit_lines(
        BATCH_CONTROLLER.logs(
            LogsCommand(db_path=db_path, limit=limit, export_path=export_path, clear=clear),
        ),
    )


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, GenBatchError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    genbatch()
