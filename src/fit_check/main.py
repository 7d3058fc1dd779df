"""CLI entrypoint for fit-check."""

import logging
from collections.abc import Iterable
from pathlib import Path

import rich_click as click

from fit_check import __version__
from fit_check.controllers import (
    AnalysisCliController,
    AnalyzeCommand,
    CliCommandError,
    ResumeCommand,
    RunListCommand,
    RunLookupCommand,
    parse_answers,
)
from fit_check.orchestrator.models import UserAnswer

click.rich_click.USE_MARKDOWN = True
ANALYSIS_CONTROLLER = AnalysisCliController()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _answers_option(
    _ctx: click.Context,
    _param: click.Parameter,
    values: tuple[str, ...],
) -> tuple[UserAnswer, ...]:
    try:
        return parse_answers(values)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _configure_logging(
    _ctx: click.Context,
    _param: click.Parameter,
    value: str | None,
) -> str | None:
    if value is not None:
        logging.basicConfig(
            level=value.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    return value


@click.group()
@click.version_option(version=__version__, prog_name="fit-check")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="FIT_CHECK_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    expose_value=False,
    is_eager=True,
    callback=_configure_logging,
    help="Logging level for diagnostics on stderr.",
)
def fit_check() -> None:
    """Decide whether a problem is a good fit for an LLM solution.

    Runs **screening**, seven **dimension** analyses, a **verdict**, secondary
    analysis and a final **synthesis**. Runs that need answers are suspended
    and can be resumed later with `fit-check resume`.
    """


@fit_check.command("analyze")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--problem", default=None, help="Problem description to analyze.")
@click.option(
    "--problem-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the problem description from a file.",
)
@click.option("--context", default=None, help="Optional additional context.")
@click.option(
    "--answer",
    "answers",
    multiple=True,
    callback=_answers_option,
    help="Answer given up front as QUESTION_ID=TEXT. Can be repeated.",
)
@click.option(
    "--offline/--online",
    default=False,
    show_default=True,
    help="Use deterministic offline heuristics instead of the inference endpoint.",
)
@click.option(
    "--sse/--lines",
    default=False,
    show_default=True,
    help="Print events as Server-Sent Events frames.",
)
def analyze(  # noqa: PLR0913
    db_path: Path | None,
    problem: str | None,
    problem_file: Path | None,
    context: str | None,
    answers: tuple[UserAnswer, ...],
    offline: bool,
    sse: bool,
) -> None:
    """Start a new analysis run and stream its progress."""

    if (problem is None) == (problem_file is None):
        raise click.UsageError("Pass exactly one of --problem or --problem-file.")
    text = problem if problem is not None else problem_file.read_text(encoding="utf-8")
    _emit_lines(
        ANALYSIS_CONTROLLER.analyze(
            AnalyzeCommand(
                problem=text,
                context=context,
                answers=answers,
                offline=offline,
                sse=sse,
                db_path=db_path,
            ),
        ),
    )


@fit_check.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Suspended run id.")
@click.option(
    "--step-id",
    default=None,
    help="Stage the run is expected to be suspended at; resuming fails on a mismatch.",
)
@click.option(
    "--answer",
    "answers",
    multiple=True,
    required=True,
    callback=_answers_option,
    help="Answer as QUESTION_ID=TEXT. Can be repeated.",
)
@click.option(
    "--offline/--online",
    default=False,
    show_default=True,
    help="Use deterministic offline heuristics instead of the inference endpoint.",
)
@click.option(
    "--sse/--lines",
    default=False,
    show_default=True,
    help="Print events as Server-Sent Events frames.",
)
def resume(  # noqa: PLR0913
    db_path: Path | None,
    run_id: str,
    step_id: str | None,
    answers: tuple[UserAnswer, ...],
    offline: bool,
    sse: bool,
) -> None:
    """Resume a suspended run with answers to its pending questions."""

    _emit_lines(
        ANALYSIS_CONTROLLER.resume(
            ResumeCommand(
                run_id=run_id,
                step_id=step_id,
                answers=answers,
                offline=offline,
                sse=sse,
                db_path=db_path,
            ),
        ),
    )


@fit_check.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Run id.")
def status(db_path: Path | None, run_id: str) -> None:
    """Show the stage and pending questions of a suspended run."""

    _emit_lines(ANALYSIS_CONTROLLER.status(RunLookupCommand(run_id=run_id, db_path=db_path)))


@fit_check.command("runs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def runs(db_path: Path | None) -> None:
    """List suspended runs that can be resumed."""

    _emit_lines(ANALYSIS_CONTROLLER.list_runs(RunListCommand(db_path=db_path)))


@fit_check.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Run id.")
def cancel(db_path: Path | None, run_id: str) -> None:
    """Cancel a suspended run and drop its snapshot."""

    _emit_lines(ANALYSIS_CONTROLLER.cancel(RunLookupCommand(run_id=run_id, db_path=db_path)))


def _emit_lines(lines: Iterable[str]) -> None:
    try:
        for line in lines:
            click.echo(line)
    except CliCommandError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":  # pragma: no cover
    fit_check()
