"""Logging setup for one ralph-loop session."""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path

LOGGER_NAME = "ralph_loop"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
CONSOLE_FORMAT = "[%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
SESSION_RULE = "═" * 63


def configure_logging(log_file: Path | None, *, verbose: bool = False) -> logging.Logger:
    """Attach a DEBUG file handler and an INFO console handler to the package logger.

    Calling it again replaces the handlers installed by the previous call.
    """

    root = logging.getLogger(LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)
    root.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(file_handler)
    return root


def log_session_header(log_file: Path, *, project: str, engine: str, model: str) -> None:
    """Write the session banner straight to the log file, bypassing the console."""

    started = datetime.now().strftime(DATE_FORMAT)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    with log_file.open("a", encoding="utf-8") as handle:
        handle.write(
            "\n".join(
                [
                    "",
                    SESSION_RULE,
                    f"  Ralph Session Started: {started}",
                    f"  Project: {project}",
                    f"  Engine: {engine}",
                    f"  Model: {model}",
                    SESSION_RULE,
                    "",
                ],
            ),
        )
