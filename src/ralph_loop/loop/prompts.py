"""Prompt templates sent to the agent for each controller mode."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

COMPLETE_MARKER = "<promise>COMPLETE</promise>"
PROMPT_OUTPUT_LINES = 100


@dataclass(slots=True, frozen=True)
class PromptContext:
    """Paths and switches shared by every prompt of one run."""

    prd_path: Path
    progress_path: Path
    skip_commit: bool = False


_TEST_REQUIREMENT = """## Test Requirement (MANDATORY)

You MUST:
- Create or modify a test file (e.g., *.test.ts, *.spec.ts, test_*.py, *_test.go)
- Write at least one test for the feature you implement
- Run the full test suite
- Verify ALL tests pass before marking the task complete

If you do not write tests, the task will be rejected and you must try again."""

_AGENTS_NOTES = """## Update AGENTS.md (If Applicable)

If you discover a reusable pattern that future work should know about:
- Check if AGENTS.md exists in the project root
- Add patterns like: 'This codebase uses X for Y' or 'Always do Z when changing W'
- Only add genuinely reusable knowledge, not task-specific details"""


def _progress_format(progress: Path) -> str:
    return f"""## Progress Notes Format

Append to {progress} using this format:

## Iteration [N] - [Task Name]
- What was implemented
- Test file created/modified: [filename]
- Tests written: [brief description]
- Test results: PASS/FAIL
- Files changed
- Learnings for future iterations
---"""


def _commit_line(skip_commit: bool) -> str:
    if skip_commit:
        return "  - Do NOT commit any changes in this run"
    return "  - Commit your changes with message: feat: [task description] (do NOT add Co-Authored-By)"


def generate_prompt(context: PromptContext) -> str:
    prd = context.prd_path
    progress = context.progress_path
    return f"""You are Ralph, an autonomous coding agent. Do exactly ONE task per iteration.

## Steps

1. Read {prd} and find the first task that is NOT complete (marked [ ]).
2. Read {progress} - check the Learnings section first for patterns from previous iterations.
3. Implement that ONE task only.
4. **CRITICAL: You MUST write tests for your implementation.**
5. **CRITICAL: You MUST run tests and ensure ALL tests pass.**

{_TEST_REQUIREMENT}

## Only Complete If Tests Pass

- If tests PASS:
  - Update {prd} to mark the task complete (change [ ] to [x])
{_commit_line(context.skip_commit)}
  - Append what worked to {progress}

- If tests FAIL:
  - Do NOT mark the task complete
  - Do NOT commit broken code
  - Append what went wrong to {progress} (so next iteration can learn)

{_progress_format(progress)}

{_AGENTS_NOTES}

## End Condition

After completing your task, check {prd}:
- If ALL tasks are [x], output exactly: {COMPLETE_MARKER}
- If tasks remain [ ], just end your response (next iteration will continue)"""


def generate_single_task_prompt(task_text: str, context: PromptContext) -> str:
    progress = context.progress_path
    return f"""You are Ralph, an autonomous coding agent. Do exactly ONE task per iteration.

## Single Task

You must complete this task:
"{task_text}"

## In-Memory PRD

- [ ] {task_text}

Do NOT create or modify {context.prd_path.name} on disk.

## Steps

1. Read {progress} - check the Learnings section first for patterns from previous iterations.
2. Implement the single task above only.
3. **CRITICAL: You MUST write tests for your implementation.**
4. **CRITICAL: You MUST run tests and ensure ALL tests pass.**

{_TEST_REQUIREMENT}

## Only Complete If Tests Pass

- If tests PASS:
  - Do NOT update {context.prd_path.name} (single-task mode)
{_commit_line(context.skip_commit)}
  - Append what worked to {progress}

- If tests FAIL:
  - Do NOT commit broken code
  - Append what went wrong to {progress} (so next iteration can learn)

{_progress_format(progress)}

{_AGENTS_NOTES}

## End Condition

After completing your task, output exactly: {COMPLETE_MARKER}"""


def generate_fix_tests_prompt(
    test_output: str,
    context: PromptContext,
    *,
    regressions: frozenset[str] = frozenset(),
) -> str:
    """Remediation prompt used after an iteration introduced test failures."""

    progress = context.progress_path
    new_failures = (
        "\n".join(f"- {name}" for name in sorted(regressions))
        if regressions
        else "- (test names could not be parsed, see output below)"
    )
    return f"""You are Ralph, an autonomous coding agent. The previous iteration broke the test suite.

## Mode: FIX TESTS

Tests that fail now but did not fail before this run:
{new_failures}

## Test Output (last {PROMPT_OUTPUT_LINES} lines)

```
{truncate_output(test_output)}
```

## Steps

1. Read the failing test output above and find the root cause.
2. Fix the implementation (or the test, if the test itself is wrong).
3. Run the full test suite and make sure the failures above are gone.
4. Do NOT start a new task from {context.prd_path} in this iteration.

## Only Complete If Tests Pass

- If tests PASS:
  - Update {context.prd_path} to mark the task complete (change [ ] to [x]) if it is done
{_commit_line(context.skip_commit)}
  - Append what you fixed to {progress}

- If tests FAIL:
  - Do NOT commit broken code
  - Append what went wrong to {progress} (so next iteration can learn)

## End Condition

If ALL tasks in {context.prd_path} are [x] and tests pass, output exactly: {COMPLETE_MARKER}"""


def generate_autofix_prompt(test_output: str, context: PromptContext) -> str:
    """Prompt for fixing failures that existed before any task work started."""

    commit = (
        "- Do NOT commit any changes in this run"
        if context.skip_commit
        else "- Commit your fixes with message: fix: resolve pre-existing test failures"
    )
    return f"""You are Ralph, an autonomous coding agent. The project's test suite is already failing.

## Mode: AUTO-FIX PRE-EXISTING FAILURES

Before any task from {context.prd_path} is started, fix the failing tests below.

## Test Output (last {PROMPT_OUTPUT_LINES} lines)

```
{truncate_output(test_output)}
```

## Rules

- Fix only what is needed to make the existing test suite pass.
- Do NOT start any task from {context.prd_path}.
- Do NOT delete or skip failing tests to make the suite green.
- Run the full test suite when you are done.
{commit}
- Append what you fixed to {context.progress_path}"""


def truncate_output(output: str, max_lines: int = PROMPT_OUTPUT_LINES) -> str:
    """Keep the last ``max_lines`` lines; runners print their summary last."""

    lines = output.rstrip("\n").splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    dropped = len(lines) - max_lines
    return "\n".join([f"[... {dropped} earlier lines truncated ...]", *lines[-max_lines:]])
