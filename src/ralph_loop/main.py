"""CLI entrypoint for ralph-loop."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from ralph_loop import __version__
from ralph_loop.config import ENGINE_NAMES
from ralph_loop.controllers import (
    CommandResult,
    EngineOptions,
    RalphCliController,
    RunCommand,
    SingleTaskCommand,
    StatusCommand,
)
from ralph_loop.loop.errors import ConfigurationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RalphCliController()


def engine_options(function: Callable[..., None]) -> Callable[..., None]:
    """Options shared by `run` and `task`."""

    decorators = [
        click.option(
            "--engine",
            type=click.Choice(ENGINE_NAMES, case_sensitive=False),
            default=None,
            help="Agent engine. If omitted, RALPH_ENGINE is used (default opencode).",
        ),
        click.option("--model", default=None, help="Primary model for the selected engine."),
        click.option(
            "--fallback-model",
            default=None,
            help="Model used once after the primary model is rate limited.",
        ),
        click.option(
            "--command-template",
            default=None,
            help="Custom agent command. Supports {model}, {prompt}, and {prompt_file}.",
        ),
        click.option(
            "--max-iterations",
            type=int,
            default=None,
            help="Iteration budget; -1 runs until complete.",
        ),
        click.option(
            "--sleep",
            "sleep_seconds",
            type=click.FloatRange(min=0),
            default=None,
            help="Seconds to wait between iterations.",
        ),
        click.option("--test-cmd", "test_command", default=None, help="Test command to verify with."),
        click.option("--no-tests", is_flag=True, default=False, help="Disable test verification."),
        click.option(
            "--skip-commit",
            is_flag=True,
            default=False,
            help="Tell the agent not to commit its changes.",
        ),
        click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output."),
    ]
    for decorator in reversed(decorators):
        function = decorator(function)
    return function


@click.group()
@click.version_option(version=__version__, prog_name="ralph-loop")
def ralph_loop() -> None:
    """Drive a CLI coding agent through a task checklist, gated on tests."""


@ralph_loop.command("run")
@click.option(
    "--prd",
    "prd_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Task checklist document. If omitted, RALPH_PRD_PATH or PRD.md is used.",
)
@engine_options
def run(prd_path: Path | None, **options: object) -> None:
    """Work through every `- [ ]` task of the checklist, one task per iteration."""

    _finish(CONTROLLER.run(RunCommand(prd_path=prd_path, options=EngineOptions(**options))))


@ralph_loop.command("task")
@click.argument("task_text")
@engine_options
def task(task_text: str, **options: object) -> None:
    """Run a single in-memory task without touching the checklist document."""

    _finish(
        CONTROLLER.run_task(
            SingleTaskCommand(task_text=task_text, options=EngineOptions(**options)),
        ),
    )


@ralph_loop.command("status")
@click.option(
    "--prd",
    "prd_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Task checklist document.",
)
def status(prd_path: Path | None) -> None:
    """Show the last recorded iteration, task progress and file locations."""

    try:
        lines = CONTROLLER.status(StatusCommand(prd_path=prd_path))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code != 0:
        raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
