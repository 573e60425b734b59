from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path

import allure
import pytest

from ralph_loop.loop.models import Baseline, TestRunResult, VerificationStatus
from ralph_loop.loop.verification import (
    DifferentialVerifier,
    ShellTestRunner,
    classify_run,
    tail_lines,
)

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Differential Verification"),
]


@dataclass
class _ScriptedRunner:
    results: list[TestRunResult]
    command: str = "fake-tests"
    calls: int = 0

    def run(self) -> TestRunResult:
        result = self.results[min(self.calls, len(self.results) - 1)]
        self.calls += 1
        return result


@dataclass
class _Changes:
    files: list[str] = field(default_factory=lambda: ["tests/test_feature.py"])

    def changed_test_files(self) -> list[str]:
        return list(self.files)


def _run(exit_code: int, *names: str) -> TestRunResult:
    output = "".join(f"FAIL {name}\n" for name in names)
    return TestRunResult(exit_code=exit_code, output=output, failing_tests=frozenset(names))


def test_dirty_baseline_passes_when_only_known_tests_fail() -> None:
    verifier = DifferentialVerifier(
        runner=_ScriptedRunner([_run(1, "test_a", "test_b"), _run(1, "test_a")]),
        changes=_Changes(),
    )

    baseline = verifier.capture_baseline()
    outcome = verifier.verify()

    assert baseline.failing_tests == frozenset({"test_a", "test_b"})
    assert outcome.status is VerificationStatus.PASSED
    assert outcome.exit_code == 1
    assert outcome.test_files == ("tests/test_feature.py",)


def test_dirty_baseline_fails_on_new_failure() -> None:
    verifier = DifferentialVerifier(
        runner=_ScriptedRunner([_run(1, "test_a", "test_b"), _run(1, "test_a", "test_c")]),
        changes=_Changes(),
    )
    verifier.capture_baseline()

    outcome = verifier.verify()

    assert outcome.status is VerificationStatus.REGRESSION
    assert outcome.regressions == frozenset({"test_c"})
    assert "test_c" in outcome.reason
    assert outcome.test_output == "FAIL test_a\nFAIL test_c\n"


def test_clean_baseline_treats_any_failure_as_regression() -> None:
    verifier = DifferentialVerifier(
        runner=_ScriptedRunner([_run(0), _run(1, "test_a")]),
        changes=_Changes(),
    )
    verifier.capture_baseline()

    outcome = verifier.verify()

    assert outcome.status is VerificationStatus.REGRESSION
    assert outcome.regressions == frozenset({"test_a"})


def test_clean_baseline_fails_even_when_names_cannot_be_parsed() -> None:
    outcome = classify_run(
        Baseline(exit_code=0, raw_output=""),
        TestRunResult(exit_code=2, output="SyntaxError: invalid syntax"),
    )

    assert outcome.status is VerificationStatus.REGRESSION
    assert outcome.regressions == frozenset()
    assert outcome.reason == "Tests failed (exit code: 2)"


@pytest.mark.parametrize("baseline_exit", [0, 1])
def test_passing_run_always_passes(baseline_exit: int) -> None:
    baseline = Baseline(exit_code=baseline_exit, raw_output="", failing_tests=frozenset({"x"}))

    assert classify_run(baseline, _run(0)).passed


def test_missing_test_changes_fail_before_running_tests() -> None:
    runner = _ScriptedRunner([_run(0)])
    verifier = DifferentialVerifier(runner=runner, changes=_Changes(files=[]))
    verifier.capture_baseline()

    outcome = verifier.verify()

    assert outcome.status is VerificationStatus.TESTS_NOT_WRITTEN
    assert outcome.reason == "No test files were created or modified"
    assert runner.calls == 1


def test_final_check_skips_tests_written_check() -> None:
    verifier = DifferentialVerifier(
        runner=_ScriptedRunner([_run(0), _run(0)]),
        changes=_Changes(files=[]),
    )
    verifier.capture_baseline()

    assert verifier.final_check().status is VerificationStatus.PASSED


def test_baseline_is_captured_once() -> None:
    runner = _ScriptedRunner([_run(1, "test_a"), _run(0)])
    verifier = DifferentialVerifier(runner=runner, changes=_Changes())

    first = verifier.capture_baseline()
    second = verifier.capture_baseline()

    assert first is second
    assert runner.calls == 1


def test_adopt_clean_baseline_requires_passing_run() -> None:
    verifier = DifferentialVerifier(runner=_ScriptedRunner([_run(1, "a")]), changes=_Changes())
    verifier.capture_baseline()

    with pytest.raises(ValueError, match="passing test run"):
        verifier.adopt_clean_baseline(_run(1, "a"))

    replaced = verifier.adopt_clean_baseline(TestRunResult(exit_code=0, output="ok"))
    assert replaced == Baseline(exit_code=0, raw_output="ok", failing_tests=frozenset())
    assert verifier.baseline is replaced


def test_disabled_verifier_skips_everything() -> None:
    verifier = DifferentialVerifier(runner=None, changes=_Changes(files=[]))

    assert verifier.capture_baseline().clean
    assert verifier.verify().status is VerificationStatus.SKIPPED
    assert verifier.final_check().passed
    assert not verifier.enabled


def test_shell_test_runner_merges_output_and_extracts_names(tmp_path: Path) -> None:
    script = tmp_path / "suite.py"
    script.write_text(
        "import sys\n"
        "print('FAIL test_one')\n"
        "sys.stderr.write('--- FAIL: TestTwo\\n')\n"
        "sys.exit(3)\n",
        "utf-8",
    )
    echoed: list[str] = []
    runner = ShellTestRunner(
        f'"{sys.executable}" "{script}"',
        cwd=tmp_path,
        echo=echoed.append,
    )

    result = runner.run()

    assert result.exit_code == 3
    assert result.failing_tests == frozenset({"test_one", "TestTwo"})
    assert "".join(echoed) == result.output


def test_tail_lines_keeps_last_lines() -> None:
    assert tail_lines("a\nb\nc\n", 2) == "b\nc"
    assert tail_lines("a\nb", 0) == ""


def test_shell_test_runner_requires_output_pipe(tmp_path: Path, monkeypatch) -> None:
    class _NoPipe:
        stdout = None

    monkeypatch.setattr(
        "ralph_loop.loop.verification.subprocess.Popen",
        lambda *args, **kwargs: _NoPipe(),
    )
    runner = ShellTestRunner("make test", cwd=tmp_path, echo=lambda _: None)

    with pytest.raises(RuntimeError, match="no output pipe"):
        runner.run()
