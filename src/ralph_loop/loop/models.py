"""Domain models for the iteration loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class RateLimitKind(str, Enum):
    """Rate-limit severity reported for one agent invocation."""

    NONE = "none"
    SOFT = "soft"
    HARD = "hard"


class LoopState(str, Enum):
    """Iteration controller states."""

    NORMAL = "normal"
    FIX_TESTS = "fix_tests"
    COMPLETE = "complete"
    ABORTED = "aborted"


class VerificationStatus(str, Enum):
    """Outcome of one verification gate."""

    PASSED = "passed"
    SKIPPED = "skipped"
    TESTS_NOT_WRITTEN = "tests_not_written"
    REGRESSION = "regression"


@dataclass(slots=True, frozen=True)
class Task:
    """One checklist entry parsed from the task document."""

    text: str
    completed: bool
    position: int


@dataclass(slots=True)
class EngineResult:
    """Outcome of one agent invocation."""

    success: bool
    exit_code: int
    output: str
    rate_limit: RateLimitKind = RateLimitKind.NONE
    rate_limit_rule: str | None = None


@dataclass(slots=True, frozen=True)
class Baseline:
    """Test-failure snapshot captured before the first task iteration."""

    exit_code: int
    raw_output: str
    failing_tests: frozenset[str] = frozenset()

    @property
    def clean(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class TestRunResult:
    """Exit status, merged output and extracted failing names of one test run."""

    __test__ = False

    exit_code: int
    output: str
    failing_tests: frozenset[str] = frozenset()

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class VerificationOutcome:
    """Verification gate result consumed by the iteration controller."""

    status: VerificationStatus
    reason: str
    test_files: tuple[str, ...] = ()
    regressions: frozenset[str] = frozenset()
    test_output: str | None = None
    exit_code: int | None = None

    @property
    def passed(self) -> bool:
        return self.status in {VerificationStatus.PASSED, VerificationStatus.SKIPPED}


@dataclass(slots=True)
class FailureStreak:
    """Consecutive verification failures on the same task."""

    task_text: str | None = None
    consecutive_count: int = 0

    def record(self, task_text: str) -> int:
        """Register a failure on ``task_text`` and return the updated count."""

        if task_text != self.task_text:
            self.task_text = task_text
            self.consecutive_count = 1
        else:
            self.consecutive_count += 1
        return self.consecutive_count

    def reset(self) -> None:
        self.task_text = None
        self.consecutive_count = 0


@dataclass(slots=True, frozen=True)
class ResumePosition:
    """Latest iteration index and active task, persisted every iteration."""

    iteration: int
    task_text: str


@dataclass(slots=True)
class ProgressEntry:
    """One iteration outcome appended to the progress log."""

    iteration: int
    task_text: str
    success: bool
    message: str
    files_changed: list[str] = field(default_factory=list)
    test_output: str | None = None


@dataclass(slots=True)
class RunReport:
    """Terminal summary of a successful run."""

    state: LoopState
    iterations: int
    message: str
    exit_code: int = 0
