"""Iteration controller driving the agent through the task list."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ralph_loop.loop.backend.base import AgentEngine
from ralph_loop.loop.errors import (
    ConfigurationError,
    ConsecutiveFailureLimitExceeded,
    InvocationFailure,
    MaxIterationsReached,
    SignalInterrupt,
    TestRegression,
    TestsNotWritten,
)
from ralph_loop.loop.models import (
    EngineResult,
    FailureStreak,
    LoopState,
    ProgressEntry,
    ResumePosition,
    RunReport,
    Task,
    VerificationOutcome,
    VerificationStatus,
)
from ralph_loop.loop.progress import ProgressStore, ResumeStateStore
from ralph_loop.loop.prompts import (
    COMPLETE_MARKER,
    PromptContext,
    generate_autofix_prompt,
    generate_fix_tests_prompt,
    generate_prompt,
    generate_single_task_prompt,
)
from ralph_loop.loop.rate_limit import RateLimitController, RateLimitDecision
from ralph_loop.loop.tasks import count_incomplete, first_incomplete, mark_complete, parse_tasks
from ralph_loop.loop.verification import DifferentialVerifier

logger = logging.getLogger(__name__)

FINAL_VERIFICATION_TASK = "Fix failing tests found by final verification"
_HANDLED_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


@dataclass(slots=True)
class LoopSettings:
    """Budgets and pacing of one controller run."""

    max_iterations: int = 10
    sleep_seconds: float = 2.0
    max_consecutive_failures: int = 3
    autofix_attempts: int = 3
    mark_complete_on_pass: bool = False
    agent_log_lines: int = 50

    @property
    def unlimited(self) -> bool:
        return self.max_iterations < 0


class IterationController:
    """State machine sequencing agent runs, rate-limit recovery and verification.

    Rate-limit retries repeat the current iteration index; they never consume
    the iteration budget or the failure streak.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: AgentEngine,
        verifier: DifferentialVerifier,
        rate_limits: RateLimitController,
        progress: ProgressStore,
        resume: ResumeStateStore,
        prompts: PromptContext,
        settings: LoopSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.verifier = verifier
        self.rate_limits = rate_limits
        self.progress = progress
        self.resume = resume
        self.prompts = prompts
        self.settings = settings
        self._sleep = sleep

        self.state = LoopState.NORMAL
        self.iteration = 0
        self.current_task: str | None = None
        self.failure_streak = FailureStreak()
        self._fix_output: str | None = None
        self._fix_regressions: frozenset[str] = frozenset()

    def run(self) -> RunReport:
        """Work through the task document until done or a budget runs out."""

        with self._signal_handlers():
            tasks = parse_tasks(self.prompts.prd_path)
            if not tasks:
                raise ConfigurationError(f"No tasks found in {self.prompts.prd_path}")
            if first_incomplete(tasks) is None:
                logger.info("All tasks already complete")
                self.state = LoopState.COMPLETE
                return RunReport(LoopState.COMPLETE, 0, "All tasks already complete")

            self._preflight()
            return self._iterate()

    def run_single_task(self, task_text: str) -> RunReport:
        """Run one in-memory task; the task document is never read or written."""

        task = Task(text=task_text, completed=False, position=-1)
        with self._signal_handlers():
            self._preflight()
            self._start_iteration(1, task)
            result = self._invoke(generate_single_task_prompt(task.text, self.prompts))
            outcome = self.verifier.verify()
            if not outcome.passed:
                self.state = LoopState.ABORTED
                self._append_failure(1, outcome)
                if outcome.status is VerificationStatus.TESTS_NOT_WRITTEN:
                    raise TestsNotWritten(outcome.reason)
                raise TestRegression(outcome.reason, regressions=outcome.regressions)

            self._append_success(1, task, outcome)
            if COMPLETE_MARKER not in result.output:
                logger.info("Agent did not emit the completion marker; verification passed")
            self.state = LoopState.COMPLETE
            return RunReport(LoopState.COMPLETE, 1, f"Task complete: {task.text}")

    def _iterate(self) -> RunReport:
        iteration = 0
        while self.settings.unlimited or iteration < self.settings.max_iterations:
            iteration += 1
            tasks = parse_tasks(self.prompts.prd_path)
            if not tasks:
                raise ConfigurationError(f"No tasks found in {self.prompts.prd_path}")
            task = first_incomplete(tasks)

            if task is None and self.state is not LoopState.FIX_TESTS:
                # Everything is checked off without a completion marker.
                report = self._complete_if_verified(iteration)
                if report is not None:
                    return report
                continue
            if task is None:
                task = Task(text=FINAL_VERIFICATION_TASK, completed=False, position=-1)

            report = self._run_iteration(iteration, task)
            if report is not None:
                return report

        self.state = LoopState.ABORTED
        logger.warning("Reached max iterations (%d)", self.settings.max_iterations)
        raise MaxIterationsReached(self.settings.max_iterations)

    def _run_iteration(self, iteration: int, task: Task) -> RunReport | None:
        self._start_iteration(iteration, task)
        result = self._invoke(self._prompt_for_state())

        outcome = self.verifier.verify()
        if not outcome.passed:
            self._record_failure(iteration, task, outcome)
            self._pause()
            return None

        self._record_pass(iteration, task, outcome)
        if COMPLETE_MARKER in result.output:
            return self._complete_if_verified(iteration)
        self._pause()
        return None

    def _start_iteration(self, iteration: int, task: Task) -> None:
        self.iteration = iteration
        self.current_task = task.text
        self.resume.save(ResumePosition(iteration=iteration, task_text=task.text))
        limit = "∞" if self.settings.unlimited else str(self.settings.max_iterations)
        logger.info(
            "Iteration %d/%s - %s (model: %s, mode: %s)",
            iteration,
            limit,
            task.text,
            self.engine.current_model,
            self.state.value,
        )

    def _prompt_for_state(self) -> str:
        if self.state is LoopState.FIX_TESTS and self._fix_output:
            return generate_fix_tests_prompt(
                self._fix_output,
                self.prompts,
                regressions=self._fix_regressions,
            )
        return generate_prompt(self.prompts)

    def _invoke(self, prompt: str) -> EngineResult:
        """Run the agent, repeating the same prompt while rate limits recover."""

        while True:
            result = self.engine.run(prompt)
            self._log_agent_output(result.output)
            if self.rate_limits.handle(result) is RateLimitDecision.RETRY:
                continue
            if not result.success:
                self.state = LoopState.ABORTED
                logger.error("%s failed with exit code %d", self.engine.name, result.exit_code)
                raise InvocationFailure(self.engine.name, result.exit_code)
            return result

    def _record_failure(self, iteration: int, task: Task, outcome: VerificationOutcome) -> None:
        count = self.failure_streak.record(task.text)
        limit = self.settings.max_consecutive_failures
        logger.warning("%s, iteration failed (%d/%d)", outcome.reason, count, limit)
        if outcome.status is VerificationStatus.REGRESSION:
            self.state = LoopState.FIX_TESTS
            self._fix_output = outcome.test_output or ""
            self._fix_regressions = outcome.regressions
        self._append_failure(iteration, outcome)

        if count >= limit:
            self.state = LoopState.ABORTED
            logger.error("Too many consecutive failures on task %r, stopping", task.text)
            raise ConsecutiveFailureLimitExceeded(task.text, count)

    def _record_pass(self, iteration: int, task: Task, outcome: VerificationOutcome) -> None:
        self.failure_streak.reset()
        self.state = LoopState.NORMAL
        self._fix_output = None
        self._fix_regressions = frozenset()
        self._append_success(iteration, task, outcome)

        if self.settings.mark_complete_on_pass and task.position >= 0:
            if mark_complete(self.prompts.prd_path, task):
                logger.info("Marked task complete: %s", task.text)

    def _complete_if_verified(self, iteration: int) -> RunReport | None:
        remaining = count_incomplete(parse_tasks(self.prompts.prd_path))
        if remaining > 0:
            logger.warning("Agent claimed complete but %d tasks remain", remaining)
            self._pause()
            return None

        outcome = self.verifier.final_check()
        if not outcome.passed:
            logger.error("Final verification failed: %s", outcome.reason)
            self.state = LoopState.FIX_TESTS
            self._fix_output = outcome.test_output or ""
            self._fix_regressions = outcome.regressions
            self.progress.append_failure(
                iteration,
                "Final verification failed",
                details=outcome.reason,
                test_output=outcome.test_output,
            )
            self._pause()
            return None

        logger.info("All tasks complete after %d iterations", iteration)
        self.state = LoopState.COMPLETE
        return RunReport(LoopState.COMPLETE, iteration, "All tasks complete")

    def _preflight(self) -> None:
        self.progress.initialize()
        baseline = self.verifier.capture_baseline()
        if baseline.clean:
            return
        self.progress.append_baseline(baseline)
        self._run_autofix()

    def _run_autofix(self) -> None:
        attempts = self.settings.autofix_attempts
        if attempts <= 0:
            return

        logger.info("Auto-fixing pre-existing test failures (max %d attempts)", attempts)
        self.progress.append_autofix_started(attempts)
        output = self.verifier.baseline.raw_output
        remaining = self.verifier.baseline.failing_tests
        for attempt in range(1, attempts + 1):
            logger.info("Auto-fix attempt %d/%d", attempt, attempts)
            self._invoke(generate_autofix_prompt(output, self.prompts))
            result = self.verifier.run_tests()
            if result.passed:
                self.verifier.adopt_clean_baseline(result)
                self.progress.append_autofix_success(attempt)
                logger.info("Auto-fix successful on attempt %d", attempt)
                return
            logger.warning("Tests still failing after auto-fix attempt %d", attempt)
            output = result.output
            remaining = result.failing_tests
            if attempt < attempts:
                self._pause()

        logger.warning(
            "Auto-fix could not resolve all pre-existing failures; "
            "proceeding with PRD tasks using differential verification",
        )
        self.progress.append_autofix_incomplete(attempts, remaining)

    def _append_failure(self, iteration: int, outcome: VerificationOutcome) -> None:
        if outcome.status is VerificationStatus.TESTS_NOT_WRITTEN:
            details = "You MUST write tests before the task can be completed"
        else:
            details = "Fix the failing tests before marking the task complete"
        self.progress.append_failure(
            iteration,
            outcome.reason,
            details=details,
            test_output=outcome.test_output,
        )

    def _append_success(self, iteration: int, task: Task, outcome: VerificationOutcome) -> None:
        self.progress.append_iteration(
            ProgressEntry(
                iteration=iteration,
                task_text=task.text,
                success=True,
                message=outcome.reason,
                files_changed=list(outcome.test_files),
            ),
        )

    def _pause(self) -> None:
        if self.settings.sleep_seconds > 0:
            self._sleep(self.settings.sleep_seconds)

    def _log_agent_output(self, output: str) -> None:
        lines = output.splitlines()
        shown = lines[: self.settings.agent_log_lines]
        logger.debug("Agent output:\n%s", "\n".join(shown))
        if len(lines) > len(shown):
            logger.debug("[... truncated ...]")

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        signals = [getattr(signal, name) for name in _HANDLED_SIGNALS if hasattr(signal, name)]
        originals: dict[int, object] = {}

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.state = LoopState.ABORTED
            logger.warning("Received signal: %s", name)
            if self.iteration:
                logger.warning("Current iteration: %d", self.iteration)
            if self.current_task:
                logger.warning("Current task: %s", self.current_task)
            logger.warning("State saved in: %s", self.resume.directory)
            raise SignalInterrupt(name)

        try:
            for signum in signals:
                original = signal.getsignal(signum)
                signal.signal(signum, _handler)
                originals[signum] = original
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            logger.debug("Signal handlers not installed outside the main thread")
        try:
            yield
        finally:
            for signum, original in originals.items():
                signal.signal(signum, original)  # type: ignore[arg-type]
