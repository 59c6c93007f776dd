"""CLI entrypoint for storyloop."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from storyloop import __version__
from storyloop.config import MODEL_STRATEGIES
from storyloop.engine.controllers import (
    ControlCommand,
    LogsCommand,
    MergeCommand,
    OrphansCommand,
    RunCommand,
    StatusCommand,
    StoryloopCliController,
    UnblockCommand,
)
from storyloop.engine.errors import EngineError
from storyloop.engine.models import EngineExit

CommandT = TypeVar("CommandT")

click.rich_click.USE_MARKDOWN = True
CONTROLLER = StoryloopCliController()

_WORKING_DIR_OPTION = click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory holding `prd-json/` and `.storyloop/`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="storyloop")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def storyloop(verbose: bool) -> None:
    """Autonomous story execution loop.

    Dispatches PRD stories from `prd-json/` to a coding agent one at a time
    until every story passes or only blocked stories remain.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@storyloop.command("run")
@_WORKING_DIR_OPTION
@click.option(
    "--config",
    "config_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="JSON config file (default `.storyloop/config.json`).",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many iterations (exit code 1).",
)
@click.option(
    "--model-strategy",
    type=click.Choice(MODEL_STRATEGIES, case_sensitive=False),
    default=None,
    help="`single` uses the default model, `smart` routes by story prefix.",
)
@click.option(
    "--kill-orphans/--keep-orphans",
    default=None,
    help="Terminate executor processes left by a crashed session before starting.",
)
@click.option("--watch", is_flag=True, help="Log queue progress while the loop runs.")
def run(  # noqa: PLR0913
    working_dir: Path | None,
    config_file: Path | None,
    max_iterations: int | None,
    model_strategy: str | None,
    kill_orphans: bool | None,
    watch: bool,
) -> None:
    """Run the loop until complete, blocked, cancelled or out of iterations.

    Exit codes: `0` complete, `1` max iterations, `2` blocked, `130` cancelled.
    """

    try:
        result = CONTROLLER.run(
            RunCommand(
                working_dir=working_dir,
                config_file=config_file,
                max_iterations=max_iterations,
                model_strategy=model_strategy,
                kill_orphans=kill_orphans,
                watch=watch,
            ),
        )
    except (EngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code != EngineExit.COMPLETE:
        raise SystemExit(int(result.exit_code))


@storyloop.command("status")
@_WORKING_DIR_OPTION
def status(working_dir: Path | None) -> None:
    """Show queue progress, blocked stories and engine state."""

    _emit_lines(_guarded(CONTROLLER.status, StatusCommand(working_dir=working_dir)))


@storyloop.command("merge")
@_WORKING_DIR_OPTION
def merge(working_dir: Path | None) -> None:
    """Merge a staged `update.json` inbox into the store now."""

    _emit_lines(_guarded(CONTROLLER.merge, MergeCommand(working_dir=working_dir)))


@storyloop.command("unblock")
@_WORKING_DIR_OPTION
@click.argument("job_ids", nargs=-1, required=True)
def unblock(working_dir: Path | None, job_ids: tuple[str, ...]) -> None:
    """Move blocked stories back to the end of the pending queue."""

    _emit_lines(
        _guarded(CONTROLLER.unblock, UnblockCommand(working_dir=working_dir, job_ids=job_ids)),
    )


@storyloop.command("orphans")
@_WORKING_DIR_OPTION
@click.option("--kill", is_flag=True, help="Terminate orphan processes and their children.")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation before killing.")
def orphans(working_dir: Path | None, kill: bool, yes: bool) -> None:
    """List executor processes whose engine session is gone."""

    if kill and not yes:
        click.confirm("Terminate all orphan executor processes?", abort=True)
    _emit_lines(_guarded(CONTROLLER.orphans, OrphansCommand(working_dir=working_dir, kill=kill)))


@storyloop.command("logs")
@_WORKING_DIR_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="How many crash logs to list, newest first.",
)
def logs(working_dir: Path | None, limit: int) -> None:
    """List crash postmortems."""

    _emit_lines(_guarded(CONTROLLER.logs, LogsCommand(working_dir=working_dir, limit=limit)))


@storyloop.command("stop")
@_WORKING_DIR_OPTION
def stop(working_dir: Path | None) -> None:
    """Ask a running loop to exit before its next job."""

    _emit_lines(CONTROLLER.stop(ControlCommand(working_dir=working_dir)))


@storyloop.command("pause")
@_WORKING_DIR_OPTION
def pause(working_dir: Path | None) -> None:
    """Pause a running loop between jobs."""

    _emit_lines(CONTROLLER.pause(ControlCommand(working_dir=working_dir)))


@storyloop.command("resume")
@_WORKING_DIR_OPTION
def resume(working_dir: Path | None) -> None:
    """Resume a paused loop."""

    _emit_lines(CONTROLLER.resume(ControlCommand(working_dir=working_dir)))


@storyloop.command("skip")
@_WORKING_DIR_OPTION
def skip(working_dir: Path | None) -> None:
    """Move the next pending story to the end of the queue."""

    _emit_lines(CONTROLLER.skip(ControlCommand(working_dir=working_dir)))


def _guarded(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (EngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    storyloop()
