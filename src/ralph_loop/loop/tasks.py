"""Checklist parsing and in-place completion for the task document."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from ralph_loop.loop.models import Task

logger = logging.getLogger(__name__)

TASK_LINE_PATTERN = re.compile(r"^\s*-\s*\[([ xX])\]\s*(.+)$")


def parse_tasks(path: Path) -> list[Task]:
    """Return checklist entries of ``path``; a missing document has none."""

    if not path.exists():
        return []
    return parse_task_text(_read_raw(path))


def parse_task_text(content: str) -> list[Task]:
    tasks: list[Task] = []
    for index, line in enumerate(content.split("\n")):
        match = TASK_LINE_PATTERN.match(line.rstrip("\r"))
        if match is None:
            continue
        tasks.append(
            Task(
                text=match.group(2).strip(),
                completed=match.group(1).lower() == "x",
                position=index,
            ),
        )
    return tasks


def first_incomplete(tasks: list[Task]) -> Task | None:
    for task in tasks:
        if not task.completed:
            return task
    return None


def count_incomplete(tasks: list[Task]) -> int:
    return sum(1 for task in tasks if not task.completed)


def all_complete(tasks: list[Task]) -> bool:
    return bool(tasks) and all(task.completed for task in tasks)


def task_summary(tasks: list[Task]) -> str:
    completed = sum(1 for task in tasks if task.completed)
    return f"{completed}/{len(tasks)} tasks complete ({len(tasks) - completed} remaining)"


def mark_complete(path: Path, task: Task) -> bool:
    """Flip the bracket of ``task`` to ``x`` in place.

    Only the single bracket character on ``task.position`` changes; all
    other bytes, line endings included, are written back untouched. Returns
    ``False`` without writing when the document is gone, the line no longer
    carries the same task, or the task is already complete.
    """

    if not path.exists():
        return False

    content = _read_raw(path)
    lines = content.split("\n")
    if task.position < 0 or task.position >= len(lines):
        logger.warning("Task position %d is outside %s", task.position, path)
        return False

    line = lines[task.position]
    match = TASK_LINE_PATTERN.match(line.rstrip("\r"))
    if match is None or match.group(2).strip() != task.text:
        logger.warning("Task %r no longer at line %d of %s", task.text, task.position, path)
        return False
    if match.group(1) != " ":
        return False

    bracket = match.start(1)
    lines[task.position] = f"{line[:bracket]}x{line[bracket + 1 :]}"
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write("\n".join(lines))
    return True


def _read_raw(path: Path) -> str:
    with path.open(encoding="utf-8", newline="") as handle:
        return handle.read()
