"""Differential test verification against a pre-flight failure baseline.

The baseline is captured once before the first task iteration. Afterwards a
run only fails verification when it introduces failures the baseline did not
already have, so a project that starts with a red suite can still make
progress while new breakage is caught.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from ralph_loop.loop.errors import ConfigurationError
from ralph_loop.loop.failing_tests import compute_regressions, extract_failing_tests
from ralph_loop.loop.models import (
    Baseline,
    TestRunResult,
    VerificationOutcome,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

CLEAN_BASELINE = Baseline(exit_code=0, raw_output="", failing_tests=frozenset())


class SuiteRunner(Protocol):
    """Runs the project's test suite once."""

    command: str

    def run(self) -> TestRunResult:
        """Run the suite to completion and return exit code plus merged output."""


class ChangeDetector(Protocol):
    def changed_test_files(self) -> list[str]:
        """Test-pattern files changed in the working tree, index or last commit."""


class ShellTestRunner:
    """Run a shell test command in the foreground with merged output."""

    def __init__(
        self,
        command: str,
        *,
        cwd: Path | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self._echo = echo if echo is not None else _write_stdout

    def run(self) -> TestRunResult:
        logger.info("Running tests: %s", self.command)
        try:
            process = subprocess.Popen(  # noqa: S602
                self.command,
                shell=True,
                cwd=self.cwd,
                env=os.environ.copy(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as error:
            raise ConfigurationError(f"Test command could not start: {error}") from error

        chunks: list[str] = []
        if process.stdout is None:
            raise RuntimeError(f"Test command {self.command!r} has no output pipe")
        with process.stdout:
            for line in process.stdout:
                chunks.append(line)
                self._echo(line)
        exit_code = process.wait()
        output = "".join(chunks)
        failing = extract_failing_tests(output)
        if exit_code == 0:
            logger.info("Tests passed")
        else:
            logger.warning("Tests failed (exit code: %d, %d failing names)", exit_code, len(failing))
        logger.debug("Test output tail:\n%s", tail_lines(output, 20))
        return TestRunResult(exit_code=exit_code, output=output, failing_tests=failing)


class DifferentialVerifier:
    """Verification gate used by the iteration controller.

    Without a test runner every check is ``SKIPPED`` and the baseline stays
    clean.
    """

    def __init__(
        self,
        *,
        runner: SuiteRunner | None,
        changes: ChangeDetector,
    ) -> None:
        self.runner = runner
        self.changes = changes
        self._baseline: Baseline | None = None

    @property
    def enabled(self) -> bool:
        return self.runner is not None

    @property
    def baseline(self) -> Baseline:
        if self._baseline is None:
            return CLEAN_BASELINE
        return self._baseline

    def capture_baseline(self) -> Baseline:
        """Run the suite once before any iteration; a red suite is not fatal."""

        if self._baseline is not None:
            return self._baseline
        if self.runner is None:
            self._baseline = CLEAN_BASELINE
            return self._baseline

        logger.info("Capturing pre-flight test baseline")
        result = self.runner.run()
        self._baseline = Baseline(
            exit_code=result.exit_code,
            raw_output=result.output,
            failing_tests=result.failing_tests,
        )
        if self._baseline.clean:
            logger.info("Baseline: all tests passing")
        else:
            logger.warning(
                "Baseline: pre-existing failures detected (exit code: %d, %d failing tests)",
                result.exit_code,
                len(result.failing_tests),
            )
        return self._baseline

    def run_tests(self) -> TestRunResult:
        if self.runner is None:
            return TestRunResult(exit_code=0, output="")
        return self.runner.run()

    def adopt_clean_baseline(self, result: TestRunResult) -> Baseline:
        """Replace the baseline after auto-fix turned the suite green."""

        if not result.passed:
            raise ValueError("Only a passing test run can replace the baseline.")
        self._baseline = Baseline(exit_code=0, raw_output=result.output, failing_tests=frozenset())
        logger.info("Baseline updated: all tests now pass")
        return self._baseline

    def verify(self) -> VerificationOutcome:
        """Tests-written check followed by the differential run."""

        if self.runner is None:
            return _skipped()

        test_files = tuple(self.changes.changed_test_files())
        if not test_files:
            logger.warning("No test files were created or modified")
            return VerificationOutcome(
                status=VerificationStatus.TESTS_NOT_WRITTEN,
                reason="No test files were created or modified",
            )
        logger.info("Test files changed: %s", ", ".join(test_files))
        return self._differential(test_files=test_files)

    def final_check(self) -> VerificationOutcome:
        """Full suite run before accepting completion; no tests-written check."""

        if self.runner is None:
            return _skipped()
        return self._differential(test_files=())

    def _differential(self, *, test_files: tuple[str, ...]) -> VerificationOutcome:
        result = self.run_tests()
        return classify_run(self.baseline, result, test_files=test_files)


def classify_run(
    baseline: Baseline,
    result: TestRunResult,
    *,
    test_files: tuple[str, ...] = (),
) -> VerificationOutcome:
    """Compare one test run to the baseline.

    A passing run always passes. Against a clean baseline any failing run is
    a regression, even when no test names could be extracted. Against a dirty
    baseline only names missing from the baseline count.
    """

    if result.passed:
        return VerificationOutcome(
            status=VerificationStatus.PASSED,
            reason="Tests passed",
            test_files=test_files,
            exit_code=result.exit_code,
        )

    regressions = compute_regressions(
        baseline_exit_code=baseline.exit_code,
        baseline_failing=baseline.failing_tests,
        current_failing=result.failing_tests,
    )
    if baseline.clean:
        reason = (
            f"New test failures: {_format_names(regressions)}"
            if regressions
            else f"Tests failed (exit code: {result.exit_code})"
        )
        logger.warning("%s", reason)
        return VerificationOutcome(
            status=VerificationStatus.REGRESSION,
            reason=reason,
            test_files=test_files,
            regressions=regressions,
            test_output=result.output,
            exit_code=result.exit_code,
        )

    if not regressions:
        logger.info(
            "No new test failures (%d pre-existing failures still present)",
            len(result.failing_tests),
        )
        return VerificationOutcome(
            status=VerificationStatus.PASSED,
            reason="No new test failures (pre-existing failures only)",
            test_files=test_files,
            exit_code=result.exit_code,
        )

    reason = f"New test failures: {_format_names(regressions)}"
    logger.warning("%s", reason)
    return VerificationOutcome(
        status=VerificationStatus.REGRESSION,
        reason=reason,
        test_files=test_files,
        regressions=regressions,
        test_output=result.output,
        exit_code=result.exit_code,
    )


def tail_lines(text: str, count: int) -> str:
    lines = text.splitlines()
    return "\n".join(lines[-count:]) if count > 0 else ""


def _format_names(names: frozenset[str]) -> str:
    return ", ".join(sorted(names))


def _skipped() -> VerificationOutcome:
    return VerificationOutcome(
        status=VerificationStatus.SKIPPED,
        reason="Test verification skipped",
    )


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()
