from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from ralph_loop.loop.vcs import GitRepository, is_test_file

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Tests-Written Check"),
]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("src/app.test.ts", True),
        ("web/Button.spec.tsx", True),
        ("pkg/parser_test.go", True),
        ("tests/test_api.py", True),
        ("test_root.py", True),
        ("api_test.py", True),
        ("src/lib.rs", False),
        ("src/contest_entry.py", False),
        ("docs/testing.md", False),
        ("src/app.ts", False),
    ],
)
def test_is_test_file(path: str, expected: bool) -> None:
    assert is_test_file(path) is expected


def _git(root: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=root, check=True, capture_output=True)


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    _git(tmp_path, "init")
    _git(tmp_path, "config", "user.email", "loop@example.com")
    _git(tmp_path, "config", "user.name", "Loop Tests")
    (tmp_path / "README.md").write_text("hello\n", "utf-8")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-m", "init")
    return tmp_path


@requires_git
def test_clean_single_commit_repo_reports_nothing(repo: Path) -> None:
    assert GitRepository(repo).changed_test_files() == []


@requires_git
def test_untracked_and_modified_test_files_are_reported(repo: Path) -> None:
    (repo / "tests").mkdir()
    (repo / "tests" / "test_new.py").write_text("def test_x():\n    pass\n", "utf-8")
    (repo / "notes.txt").write_text("not a test\n", "utf-8")

    assert GitRepository(repo).changed_test_files() == ["tests/test_new.py"]


@requires_git
def test_staged_test_file_is_reported(repo: Path) -> None:
    (repo / "widget.spec.ts").write_text("it('works', () => {})\n", "utf-8")
    _git(repo, "add", "widget.spec.ts")

    assert GitRepository(repo).changed_test_files() == ["widget.spec.ts"]


@requires_git
def test_test_file_in_last_commit_is_reported(repo: Path) -> None:
    (repo / "parser_test.go").write_text("package main\n", "utf-8")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "add test")

    assert GitRepository(repo).changed_test_files() == ["parser_test.go"]


def test_directory_outside_git_reports_nothing(tmp_path: Path) -> None:
    assert GitRepository(tmp_path).changed_test_files() == []
