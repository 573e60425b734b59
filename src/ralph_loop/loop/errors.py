"""Terminal error taxonomy for the iteration loop.

Rate-limit hits and verification failures are recovered inside the
controller and surface only as values (``RateLimitKind``,
``VerificationOutcome``). Everything here propagates to the CLI layer, which
prints a summary and exits with ``exit_code``.
"""

from __future__ import annotations

EXIT_FAILURE = 1
EXIT_MAX_ITERATIONS = 2
EXIT_SIGNAL = 130


class RalphError(RuntimeError):
    """Base error carrying the process exit code for the top level."""

    exit_code: int = EXIT_FAILURE

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigurationError(RalphError):
    """Unusable engine, model, or settings detected at startup."""


class InvocationFailure(RalphError):
    """Agent exited nonzero for a reason other than rate limiting."""

    def __init__(self, engine: str, exit_code: int) -> None:
        super().__init__(
            f"{engine} failed with exit code {exit_code}",
            exit_code=exit_code if exit_code > 0 else EXIT_FAILURE,
        )
        self.engine = engine
        self.agent_exit_code = exit_code


class RateLimitExhausted(RalphError):
    """Rate limit persisted and no fallback model remains."""


class VerificationFailure(RalphError):
    """Verification gate failed where no retry is allowed (single-task mode)."""


class TestsNotWritten(VerificationFailure):
    """No test file changed during the iteration."""

    __test__ = False


class TestRegression(VerificationFailure):
    """Tests failing now that were not failing in the baseline."""

    __test__ = False

    def __init__(self, message: str, *, regressions: frozenset[str]) -> None:
        super().__init__(message)
        self.regressions = regressions


class ConsecutiveFailureLimitExceeded(RalphError):
    """The same task failed verification too many times in a row."""

    def __init__(self, task_text: str, count: int) -> None:
        super().__init__(
            f"Too many consecutive failures on task {task_text!r} ({count}); "
            "manual intervention required",
        )
        self.task_text = task_text
        self.count = count


class MaxIterationsReached(RalphError):
    """Iteration budget spent before the task list was completed."""

    exit_code = EXIT_MAX_ITERATIONS

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Reached max iterations ({max_iterations})")
        self.max_iterations = max_iterations


class SignalInterrupt(RalphError):
    """Termination signal received while the loop was running."""

    exit_code = EXIT_SIGNAL

    def __init__(self, signal_name: str) -> None:
        super().__init__(f"Received signal: {signal_name}")
        self.signal_name = signal_name
