from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from ralph_loop.logs import LOGGER_NAME
from ralph_loop.loop.models import ResumePosition
from ralph_loop.loop.progress import ResumeStateStore
from ralph_loop.main import ralph_loop

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Command Line"),
]

MARKER_REPLY = "--reply '<promise>COMPLETE</promise>'"


@pytest.fixture()
def project(tmp_path: Path, ralph_home: Path, monkeypatch) -> Iterator[Path]:
    workdir = tmp_path / "demo-project"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    yield workdir
    package_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()


def test_run_completes_checklist_with_echo_agent(
    project: Path,
    ralph_home: Path,
    echo_agent_template: str,
    monkeypatch,
) -> None:
    monkeypatch.setenv("RALPH_MARK_COMPLETE_ON_PASS", "true")
    (project / "PRD.md").write_text("# Plan\n\n- [ ] Add greeting\n", "utf-8")

    result = CliRunner().invoke(
        ralph_loop,
        [
            "run",
            "--command-template",
            f"{echo_agent_template} {MARKER_REPLY} --touch tests/test_greeting.py",
            "--no-tests",
            "--sleep",
            "0",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "All tasks complete" in result.output
    assert "Iterations: 1" in result.output
    assert (project / "PRD.md").read_text("utf-8") == "# Plan\n\n- [x] Add greeting\n"
    assert (project / "tests" / "test_greeting.py").exists()

    progress = (ralph_home / "progress" / "progress-demo-project.txt").read_text("utf-8")
    assert "## Iteration 1 - Add greeting" in progress
    log = (ralph_home / "logs" / "ralph-demo-project.log").read_text("utf-8")
    assert "Ralph Session Started" in log
    assert "Iteration 1/10 - Add greeting" in log


def test_run_exits_two_when_iterations_run_out(project: Path, echo_agent_template: str) -> None:
    (project / "PRD.md").write_text("- [ ] Never finished\n", "utf-8")

    result = CliRunner().invoke(
        ralph_loop,
        [
            "run",
            "--command-template",
            echo_agent_template,
            "--no-tests",
            "--max-iterations",
            "2",
            "--sleep",
            "0",
        ],
    )

    assert result.exit_code == 2
    assert "Error: Reached max iterations (2)" in result.output
    assert "Run again to continue from the next incomplete task" in result.output


def test_run_reports_agent_exit_code(project: Path, echo_agent_template: str) -> None:
    (project / "PRD.md").write_text("- [ ] Crash\n", "utf-8")

    result = CliRunner().invoke(
        ralph_loop,
        ["run", "--command-template", f"{echo_agent_template} --exit-code 5", "--no-tests"],
    )

    assert result.exit_code == 5
    assert "failed with exit code 5" in result.output


def test_run_without_tasks_is_a_configuration_error(project: Path, echo_agent_template: str) -> None:
    result = CliRunner().invoke(
        ralph_loop,
        ["run", "--command-template", echo_agent_template, "--no-tests"],
    )

    assert result.exit_code == 1
    assert "No tasks found in" in result.output


def test_run_rejects_invalid_engine_from_environment(project: Path, monkeypatch) -> None:
    monkeypatch.setenv("RALPH_ENGINE", "codex")

    result = CliRunner().invoke(ralph_loop, ["run"])

    assert result.exit_code == 1
    assert "Invalid RALPH_ENGINE" in result.output


def test_run_rejects_invalid_engine_option(project: Path) -> None:
    result = CliRunner().invoke(ralph_loop, ["run", "--engine", "codex"])

    assert result.exit_code == 2


def test_run_reports_missing_agent_binary(project: Path) -> None:
    (project / "PRD.md").write_text("- [ ] Anything\n", "utf-8")

    result = CliRunner().invoke(
        ralph_loop,
        ["run", "--command-template", "definitely-missing-agent {prompt}", "--no-tests"],
    )

    assert result.exit_code == 1
    assert "'definitely-missing-agent' command not found" in result.output


def test_task_runs_in_memory_without_task_document(project: Path, echo_agent_template: str) -> None:
    result = CliRunner().invoke(
        ralph_loop,
        [
            "task",
            "Add a health endpoint",
            "--command-template",
            f"{echo_agent_template} {MARKER_REPLY}",
            "--no-tests",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Task complete: Add a health endpoint" in result.output
    assert not (project / "PRD.md").exists()


def test_task_rejects_blank_text(project: Path) -> None:
    result = CliRunner().invoke(ralph_loop, ["task", "   "])

    assert result.exit_code == 1
    assert "Error: task text must not be empty" in result.output


def test_status_without_history(project: Path) -> None:
    result = CliRunner().invoke(ralph_loop, ["status"])

    assert result.exit_code == 0, result.output
    assert "Project: demo-project" in result.output
    assert "Last iteration: none recorded" in result.output
    assert "no checklist found" in result.output
    assert "(missing)" in result.output


def test_status_shows_resume_position_and_task_summary(project: Path, ralph_home: Path) -> None:
    (project / "PRD.md").write_text("- [x] First\n- [ ] Second\n", "utf-8")
    ResumeStateStore(ralph_home / "state" / "demo-project").save(
        ResumePosition(iteration=3, task_text="Second"),
    )

    result = CliRunner().invoke(ralph_loop, ["status"])

    assert result.exit_code == 0, result.output
    assert "Last iteration: 3" in result.output
    assert "Last task: Second" in result.output
    assert "1/2 tasks complete (1 remaining)" in result.output


def test_version_option() -> None:
    result = CliRunner().invoke(ralph_loop, ["--version"])

    assert result.exit_code == 0
    assert "ralph-loop" in result.output
