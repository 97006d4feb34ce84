"""CLI entrypoint for polyrev."""

import logging
import sys
from datetime import date, datetime
from pathlib import Path

import rich_click as click

from polyrev import __version__
from polyrev.controllers import (
    PlanCommand,
    ReviewCliController,
    RunCommand,
    StateCommand,
)
from polyrev.errors import PolyrevError

click.rich_click.USE_MARKDOWN = True
REVIEW_CONTROLLER = ReviewCliController()
DEFAULT_CONFIG = Path("polyrev.yaml")


@click.group()
@click.version_option(version=__version__, prog_name="polyrev")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def polyrev(verbose: bool) -> None:
    """Parallel code review with CLI agents."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@polyrev.command("run")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG,
    show_default=True,
    help="Reviewer catalogue (YAML).",
)
@click.option("--reviewer", "reviewer_ids", multiple=True, help="Run only this reviewer. Can be repeated.")
@click.option("--scope", default=None, help="Run only reviewers attached to this scope.")
@click.option("--diff-base", default=None, help="Review only files changed versus this git ref.")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Max jobs in flight.")
@click.option("--report-dir", type=click.Path(path_type=Path), default=None, help="Report directory.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Idempotency SQLite DB path.")
@click.option("--force", is_flag=True, default=False, help="Re-run jobs already completed today.")
@click.option("--dry-run", is_flag=True, default=False, help="Print the job plan without running it.")
def run(  # noqa: PLR0913
    config_path: Path,
    reviewer_ids: tuple[str, ...],
    scope: str | None,
    diff_base: str | None,
    concurrency: int | None,
    report_dir: Path | None,
    db_path: Path | None,
    force: bool,
    dry_run: bool,
) -> None:
    """Run reviewers and write per-job reports plus a summary.

    Exits with status 1 when any job failed or any p0 finding was reported.
    """

    try:
        result = REVIEW_CONTROLLER.run(
            RunCommand(
                config_path=config_path,
                reviewer_ids=reviewer_ids,
                scope=scope,
                diff_base=diff_base,
                concurrency=concurrency,
                report_dir=report_dir,
                db_path=db_path,
                force=force,
                dry_run=dry_run,
            ),
        )
    except PolyrevError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    sys.exit(result.exit_code)


@polyrev.command("plan")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG,
    show_default=True,
    help="Reviewer catalogue (YAML).",
)
@click.option("--reviewer", "reviewer_ids", multiple=True, help="Plan only this reviewer. Can be repeated.")
@click.option("--scope", default=None, help="Plan only reviewers attached to this scope.")
@click.option("--diff-base", default=None, help="Plan only files changed versus this git ref.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Idempotency SQLite DB path.")
def plan(
    config_path: Path,
    reviewer_ids: tuple[str, ...],
    scope: str | None,
    diff_base: str | None,
    db_path: Path | None,
) -> None:
    """Show jobs, chunk counts and today's idempotency state without invoking providers."""

    try:
        lines = REVIEW_CONTROLLER.plan(
            PlanCommand(
                config_path=config_path,
                reviewer_ids=reviewer_ids,
                scope=scope,
                diff_base=diff_base,
                db_path=db_path,
            ),
        )
    except PolyrevError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@polyrev.command("state")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Reviewer catalogue used to locate the state DB.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Idempotency SQLite DB path.")
@click.option("--date", "run_date", default=None, help="Only records for this date (YYYY-MM-DD).")
@click.option("--job", "job_id", default=None, help="Only records for this job id.")
def state(
    config_path: Path | None,
    db_path: Path | None,
    run_date: str | None,
    job_id: str | None,
) -> None:
    """List idempotency records, newest first."""

    try:
        lines = REVIEW_CONTROLLER.state(
            StateCommand(
                config_path=config_path,
                db_path=db_path,
                run_date=_parse_date(run_date),
                job_id=job_id,
            ),
        )
    except PolyrevError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()  # noqa: DTZ007
    except ValueError as error:
        raise click.BadParameter(f"Expected YYYY-MM-DD, got {value!r}", param_hint="--date") from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    polyrev()
