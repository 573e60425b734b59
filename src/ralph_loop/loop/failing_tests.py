"""Framework-agnostic extraction of failing test names from raw runner output."""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class FailingTestRule:
    """Line pattern with a ``name`` group identifying one failing test."""

    name: str
    pattern: re.Pattern[str]


_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

# Evaluated top to bottom; the first rule matching a line wins, so the
# runner-specific shapes come before the generic FAIL keyword.
FAILING_TEST_RULES: tuple[FailingTestRule, ...] = (
    FailingTestRule("go_test", re.compile(r"^\s*--- FAIL:\s+(?P<name>\S+)")),
    FailingTestRule(
        "pytest_summary",
        re.compile(r"^(?:FAILED|ERROR)\s+(?P<name>[^\s(]\S*)(?:\s+-\s.*)?$"),
    ),
    FailingTestRule(
        "pytest_verbose",
        re.compile(r"^(?P<name>\S+::\S+)\s+(?:FAILED|ERROR)\b"),
    ),
    FailingTestRule(
        "cargo_test",
        re.compile(r"^\s*test\s+(?P<name>\S+)\s+\.\.\.\s+FAILED\b"),
    ),
    FailingTestRule(
        "unittest",
        re.compile(r"^(?:FAIL|ERROR):\s+(?P<name>\w+\s+\([\w.]+\))"),
    ),
    FailingTestRule(
        "glyph",
        re.compile(
            r"^\s*(?:✕|✗|×|✘)\s+(?P<name>.+?)(?:\s+\(\d+(?:\.\d+)?\s*m?s\))?\s*$",
        ),
    ),
    FailingTestRule(
        "bun_fail",
        re.compile(r"^\s*\(fail\)\s+(?P<name>.+?)(?:\s+\[\d+(?:\.\d+)?\s*m?s\])?\s*$"),
    ),
    FailingTestRule(
        "tap_not_ok",
        re.compile(r"^\s*not ok\s+\d+\s+(?:-\s+)?(?P<name>.+?)\s*$"),
    ),
    FailingTestRule(
        "fail_keyword",
        re.compile(r"^\s*FAIL(?:ED)?:?\s+(?P<name>[^\s(]\S*)"),
    ),
)


def extract_failing_tests(
    output: str,
    *,
    rules: tuple[FailingTestRule, ...] = FAILING_TEST_RULES,
) -> frozenset[str]:
    """Return the deduplicated set of failing test identifiers in ``output``."""

    names: set[str] = set()
    for raw_line in _ANSI_ESCAPE.sub("", output).splitlines():
        line = raw_line.rstrip()
        if not line:
            continue
        for rule in rules:
            match = rule.pattern.match(line)
            if match is None:
                continue
            name = match.group("name").strip()
            if name:
                names.add(name)
            break
    return frozenset(names)


def compute_regressions(
    *,
    baseline_exit_code: int,
    baseline_failing: frozenset[str],
    current_failing: frozenset[str],
) -> frozenset[str]:
    """Failing names that count as new relative to the baseline.

    A clean baseline makes every current failure new; otherwise only names
    absent from the baseline set are regressions.
    """

    if baseline_exit_code == 0:
        return current_failing
    return current_failing - baseline_failing
