"""Git queries answering which test files an iteration touched."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

TEST_FILE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\.(?:test|spec)\.(?:ts|js|tsx|jsx|mjs|cjs|py)$"),
    re.compile(r"_test\.(?:go|py|rs)$"),
    re.compile(r"(?:^|/)test_[^/]*\.py$"),
)

# Working tree vs HEAD, index vs HEAD, last commit, then new untracked files.
CHANGE_QUERIES: tuple[tuple[str, ...], ...] = (
    ("diff", "--name-only", "HEAD"),
    ("diff", "--cached", "--name-only"),
    ("diff", "--name-only", "HEAD~1", "HEAD"),
    ("ls-files", "--others", "--exclude-standard"),
)


class GitError(RuntimeError):
    """Raised when a git command fails or git cannot be started."""


def is_test_file(path: str) -> bool:
    normalized = path.replace("\\", "/")
    return any(pattern.search(normalized) for pattern in TEST_FILE_PATTERNS)


class GitRepository:
    """Thin wrapper around the ``git`` CLI rooted at one working directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def changed_files(self) -> list[str]:
        """Union of paths reported by every change query, in first-seen order.

        Queries that fail (no commits yet, no parent commit, not a repository)
        contribute nothing.
        """

        seen: dict[str, None] = {}
        for query in CHANGE_QUERIES:
            try:
                output = self._run_git(query)
            except GitError as error:
                logger.debug("Skipping git %s: %s", " ".join(query), error)
                continue
            for line in output.splitlines():
                path = line.strip()
                if path:
                    seen.setdefault(path, None)
        return list(seen)

    def changed_test_files(self) -> list[str]:
        return [path for path in self.changed_files() if is_test_file(path)]

    def _run_git(self, args: Sequence[str]) -> str:
        command = ["git", *args]
        try:
            process = subprocess.run(  # noqa: S603
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
            )
        except OSError as error:
            raise GitError(f"git could not be started: {error}") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        if process.returncode != 0:
            message = stderr.strip() or stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return stdout
