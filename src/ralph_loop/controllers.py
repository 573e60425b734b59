"""Controllers for ralph-loop CLI commands."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.logs import configure_logging, log_session_header
from ralph_loop.loop.backend import CliAgentEngine
from ralph_loop.loop.controller import IterationController, LoopSettings
from ralph_loop.loop.errors import (
    EXIT_FAILURE,
    ConfigurationError,
    ConsecutiveFailureLimitExceeded,
    MaxIterationsReached,
    RalphError,
)
from ralph_loop.loop.models import RunReport
from ralph_loop.loop.progress import ProgressStore, ResumeStateStore
from ralph_loop.loop.prompts import PromptContext
from ralph_loop.loop.rate_limit import RateLimitController
from ralph_loop.loop.tasks import parse_tasks, task_summary
from ralph_loop.loop.vcs import GitRepository
from ralph_loop.loop.verification import DifferentialVerifier, ShellTestRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EngineOptions:
    """CLI overrides shared by ``run`` and ``task``."""

    engine: str | None = None
    model: str | None = None
    fallback_model: str | None = None
    command_template: str | None = None
    max_iterations: int | None = None
    sleep_seconds: float | None = None
    test_command: str | None = None
    no_tests: bool = False
    skip_commit: bool = False
    verbose: bool = False


@dataclass(slots=True)
class RunCommand:
    """CLI input for the task-list loop."""

    prd_path: Path | None = None
    options: EngineOptions = field(default_factory=EngineOptions)


@dataclass(slots=True)
class SingleTaskCommand:
    """CLI input for single-task mode."""

    task_text: str
    options: EngineOptions = field(default_factory=EngineOptions)


@dataclass(slots=True)
class StatusCommand:
    """CLI input for resume/progress inspection."""

    prd_path: Path | None = None


@dataclass(slots=True)
class CommandResult:
    """Rendered lines plus the process exit code."""

    lines: list[str]
    exit_code: int = 0


class RalphCliController:
    """Builds the iteration controller from settings and renders its outcome."""

    def __init__(
        self,
        *,
        project_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_dir = project_dir
        self._sleep = sleep

    def run(self, command: RunCommand) -> CommandResult:
        return self._execute(
            prd_path=command.prd_path,
            options=command.options,
            action=lambda controller: controller.run(),
            single_task=False,
        )

    def run_task(self, command: SingleTaskCommand) -> CommandResult:
        text = command.task_text.strip()
        if not text:
            return CommandResult(lines=["Error: task text must not be empty"], exit_code=EXIT_FAILURE)
        return self._execute(
            prd_path=None,
            options=command.options,
            action=lambda controller: controller.run_single_task(text),
            single_task=True,
        )

    def status(self, command: StatusCommand) -> list[str]:
        """Show resume position, progress log location and task summary."""

        settings = self._settings(prd_path=command.prd_path, options=EngineOptions())
        project = settings.project_name
        resume = ResumeStateStore(settings.storage.state_directory(project))
        position = resume.load()
        progress_path = settings.storage.progress_file(project)
        prd_path = settings.resolved_prd_path

        lines = [f"Project: {project}"]
        if position is None:
            lines.append("Last iteration: none recorded")
        else:
            lines.append(f"Last iteration: {position.iteration}")
            lines.append(f"Last task: {position.task_text}")
        tasks = parse_tasks(prd_path)
        if tasks:
            lines.append(f"Tasks ({prd_path}): {task_summary(tasks)}")
        else:
            lines.append(f"Tasks ({prd_path}): no checklist found")
        lines.append(f"Progress file: {progress_path}{'' if progress_path.exists() else ' (missing)'}")
        lines.append(f"State dir: {resume.directory}")
        return lines

    def _execute(
        self,
        *,
        prd_path: Path | None,
        options: EngineOptions,
        action: Callable[[IterationController], RunReport],
        single_task: bool,
    ) -> CommandResult:
        try:
            settings = self._settings(prd_path=prd_path, options=options)
        except ConfigurationError as error:
            return CommandResult(lines=[f"Error: {error}"], exit_code=error.exit_code)

        project = settings.project_name
        log_file = settings.storage.log_file(project)
        log_session_header(
            log_file,
            project=project,
            engine=settings.engine.engine,
            model=settings.engine.model,
        )
        configure_logging(log_file, verbose=options.verbose)
        locations = _locations(settings)

        try:
            controller = self._build_controller(settings, single_task=single_task)
            report = action(controller)
        except RalphError as error:
            logger.error("%s", error)
            return CommandResult(
                lines=[f"Error: {error}", *_hint(error), *locations],
                exit_code=error.exit_code,
            )

        return CommandResult(
            lines=[report.message, f"Iterations: {report.iterations}", *locations],
            exit_code=report.exit_code,
        )

    def _settings(self, *, prd_path: Path | None, options: EngineOptions) -> Settings:
        try:
            settings = Settings.from_env(self.project_dir or Path.cwd())
            _apply_overrides(settings, prd_path=prd_path, options=options)
            settings.validate()
        except ValueError as error:
            raise ConfigurationError(str(error)) from error
        return settings

    def _build_controller(self, settings: Settings, *, single_task: bool) -> IterationController:
        project = settings.project_name
        engine = CliAgentEngine.from_preset(
            settings.engine.engine,
            model=settings.engine.model,
            fallback_model=settings.engine.fallback_model,
            command_template=settings.engine.command_template,
            cwd=settings.project_dir,
        )
        if not engine.is_available():
            raise ConfigurationError(
                f"'{engine.command_template.split()[0]}' command not found. "
                f"Please install the {engine.name} CLI.",
            )

        test_command = settings.effective_test_command()
        if settings.verification.skip_test_verify:
            logger.warning("Test verification disabled")
        elif test_command is None:
            logger.warning("No test command detected, skipping verification")
        else:
            logger.info("Test command: %s", test_command)
        runner = (
            ShellTestRunner(test_command, cwd=settings.project_dir)
            if test_command is not None
            else None
        )

        budgets = settings.budgets
        logger.info(
            "Starting Ralph (%s) - %s, model %s%s",
            engine.name,
            "infinite mode" if budgets.max_iterations < 0 else f"max {budgets.max_iterations} iterations",
            engine.current_model,
            f", fallback {settings.engine.fallback_model}" if settings.engine.fallback_model else "",
        )
        return IterationController(
            engine=engine,
            verifier=DifferentialVerifier(
                runner=runner,
                changes=GitRepository(settings.project_dir),
            ),
            rate_limits=RateLimitController(
                engine=engine,
                max_soft_retries=budgets.soft_limit_retries,
                soft_wait_seconds=budgets.soft_limit_wait_seconds,
                sleep=self._sleep,
            ),
            progress=ProgressStore(settings.storage.progress_file(project)),
            resume=ResumeStateStore(settings.storage.state_directory(project)),
            prompts=PromptContext(
                prd_path=settings.resolved_prd_path,
                progress_path=settings.storage.progress_file(project),
                skip_commit=settings.verification.skip_commit,
            ),
            settings=LoopSettings(
                max_iterations=budgets.max_iterations,
                sleep_seconds=budgets.sleep_seconds,
                max_consecutive_failures=budgets.max_consecutive_failures,
                autofix_attempts=budgets.effective_autofix_attempts,
                mark_complete_on_pass=(
                    settings.verification.mark_complete_on_pass and not single_task
                ),
            ),
            sleep=self._sleep,
        )


def _apply_overrides(settings: Settings, *, prd_path: Path | None, options: EngineOptions) -> None:
    if prd_path is not None:
        settings.prd_path = prd_path
    if options.engine:
        settings.engine.engine = options.engine.strip().lower()
    if options.model:
        if settings.engine.engine == "claude":
            settings.engine.claude_model = options.model
        else:
            settings.engine.opencode_model = options.model
    if options.fallback_model:
        settings.engine.fallback_model = options.fallback_model
    if options.command_template:
        settings.engine.command_template = options.command_template
    if options.max_iterations is not None:
        settings.budgets.max_iterations = options.max_iterations
    if options.sleep_seconds is not None:
        settings.budgets.sleep_seconds = options.sleep_seconds
    if options.test_command:
        settings.verification.test_command = options.test_command
    if options.no_tests:
        settings.verification.skip_test_verify = True
    if options.skip_commit:
        settings.verification.skip_commit = True


def _locations(settings: Settings) -> list[str]:
    project = settings.project_name
    return [
        f"Log file: {settings.storage.log_file(project)}",
        f"Progress file: {settings.storage.progress_file(project)}",
        f"State dir: {settings.storage.state_directory(project)}",
    ]


def _hint(error: RalphError) -> list[str]:
    if isinstance(error, ConsecutiveFailureLimitExceeded):
        return ["Manual intervention required"]
    if isinstance(error, MaxIterationsReached):
        return ["Run again to continue from the next incomplete task"]
    return []
