"""Local deterministic agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo a scripted reply, optionally touching files, and exit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--model", default="echo")
    parser.add_argument("--reply", default="")
    parser.add_argument("--stderr", default="")
    parser.add_argument("--touch", action="append", default=[])
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    prompt = args.prompt
    if args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")

    for raw_path in args.touch:
        path = Path(raw_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"# written by echo_agent ({args.model})\n", "utf-8")

    reply = args.reply or f"model={args.model} prompt_chars={len(prompt)}"
    sys.stdout.write(reply + "\n")
    if args.stderr:
        sys.stderr.write(args.stderr + "\n")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
