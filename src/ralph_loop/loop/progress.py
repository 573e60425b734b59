"""Append-only progress log and the crash-resume breadcrumb files."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from tempfile import NamedTemporaryFile

from ralph_loop.loop.models import Baseline, ProgressEntry, ResumePosition

logger = logging.getLogger(__name__)

PROGRESS_HEADER = "# Progress Log\n\n"
OUTPUT_TAIL_LINES = 50
LAST_ITERATION_FILE = "last_iteration"
LAST_TASK_FILE = "last_task"


class ProgressStore:
    """Markdown audit log of iteration outcomes, one file per project.

    The controller is the only writer during a run and every write is a single
    append, so readers never observe a half-written entry header.
    """

    def __init__(self, path: Path, *, now: Callable[[], datetime] = datetime.now) -> None:
        self.path = path
        self._now = now

    def initialize(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(PROGRESS_HEADER, "utf-8")

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text("utf-8")

    def append_iteration(self, entry: ProgressEntry) -> None:
        lines = [
            "",
            f"## Iteration {entry.iteration} - {entry.task_text}",
            f"- Status: {'SUCCESS' if entry.success else 'FAILED'}",
            f"- {entry.message}",
        ]
        if entry.files_changed:
            lines.append(f"- Files changed: {', '.join(entry.files_changed)}")
        if entry.test_output:
            lines.extend(_fenced_tail("### Test Output", entry.test_output))
        lines.extend(["---", ""])
        self._append(lines)

    def append_failure(
        self,
        iteration: int,
        reason: str,
        *,
        details: str | None = None,
        test_output: str | None = None,
    ) -> None:
        lines = ["", f"## FAILED - Iteration {iteration}", f"- Reason: {reason}"]
        if details:
            lines.append(f"- Details: {details}")
        if test_output:
            lines.extend(_fenced_tail("### Test Output", test_output))
        lines.extend(["---", ""])
        self._append(lines)

    def append_baseline(self, baseline: Baseline) -> None:
        """Record pre-existing failures; a clean baseline writes nothing."""

        if baseline.clean:
            return
        lines = [
            "",
            f"## Pre-flight Test Baseline - {self._timestamp()}",
            f"- Exit code: {baseline.exit_code}",
            "- Status: Pre-existing test failures detected",
            "",
            "### Failing Tests:",
        ]
        if baseline.failing_tests:
            lines.extend(f"  - {name}" for name in sorted(baseline.failing_tests))
        else:
            lines.append("  (Unable to parse test names - check output below)")
        lines.extend(
            [
                "",
                "**These will not block PRD work.** Attempting auto-fix first.",
                "Only NEW failures introduced during PRD work will block progress"
                " (differential verification).",
            ],
        )
        lines.extend(_fenced_tail("### Baseline Test Output", baseline.raw_output))
        lines.extend(["---", ""])
        self._append(lines)

    def append_autofix_started(self, max_attempts: int) -> None:
        self._append(
            [
                "",
                f"## Auto-fix Pre-existing Failures - {self._timestamp()}",
                "- Pre-existing test failures detected in baseline",
                "- Attempting to fix before starting PRD tasks",
                f"- Max attempts: {max_attempts}",
                "---",
                "",
            ],
        )

    def append_autofix_success(self, attempt: int) -> None:
        self._append(
            [
                "",
                f"## Auto-fix Success - Attempt {attempt}",
                "- All pre-existing test failures have been fixed",
                "- Baseline updated: All tests now passing",
                "- Proceeding with PRD tasks",
                "---",
                "",
            ],
        )

    def append_autofix_incomplete(self, attempts: int, remaining: frozenset[str]) -> None:
        lines = [
            "",
            f"## Auto-fix Incomplete - After {attempts} Attempts",
            "- Could not fix all pre-existing test failures",
        ]
        if remaining:
            lines.append(f"- Still failing: {', '.join(sorted(remaining))}")
        lines.extend(
            [
                "- Proceeding with PRD tasks using differential verification",
                "- Only NEW test failures will block PRD work",
                "---",
                "",
            ],
        )
        self._append(lines)

    def _timestamp(self) -> str:
        return self._now().strftime("%Y-%m-%d %H:%M:%S")

    def _append(self, lines: list[str]) -> None:
        self.initialize()
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(lines))


class ResumeStateStore:
    """Two small files holding the latest iteration index and active task."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    @property
    def iteration_path(self) -> Path:
        return self.directory / LAST_ITERATION_FILE

    @property
    def task_path(self) -> Path:
        return self.directory / LAST_TASK_FILE

    def save(self, position: ResumePosition) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        _replace_text(self.iteration_path, f"{position.iteration}\n")
        _replace_text(self.task_path, f"{position.task_text}\n")

    def load(self) -> ResumePosition | None:
        if not self.iteration_path.exists() or not self.task_path.exists():
            return None
        raw_iteration = self.iteration_path.read_text("utf-8").strip()
        try:
            iteration = int(raw_iteration)
        except ValueError:
            logger.warning("Ignoring corrupt resume state in %s: %r", self.iteration_path, raw_iteration)
            return None
        return ResumePosition(
            iteration=iteration,
            task_text=self.task_path.read_text("utf-8").rstrip("\n"),
        )


def _replace_text(path: Path, content: str) -> None:
    with NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
    ) as handle:
        handle.write(content)
    os.replace(handle.name, path)


def _fenced_tail(title: str, output: str) -> list[str]:
    tail = output.splitlines()[-OUTPUT_TAIL_LINES:]
    return ["", f"{title} (last {OUTPUT_TAIL_LINES} lines):", "```", *tail, "```"]
