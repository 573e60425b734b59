"""Subprocess-based agent backend for CLI coding agents."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from tempfile import TemporaryDirectory

from ralph_loop.loop.backend.base import EngineCapabilities, ModelSelection
from ralph_loop.loop.errors import ConfigurationError
from ralph_loop.loop.models import EngineResult, RateLimitKind
from ralph_loop.loop.rate_limit import (
    NO_RATE_LIMIT,
    ClassificationMode,
    RateLimitClassification,
    classify_rate_limit,
)


@dataclass(slots=True, frozen=True)
class EnginePreset:
    """Known agent CLI with its command template and capabilities."""

    name: str
    command_template: str
    default_model: str
    capabilities: EngineCapabilities


ENGINE_PRESETS: dict[str, EnginePreset] = {
    "claude": EnginePreset(
        name="claude",
        command_template="claude --model {model} --dangerously-skip-permissions -p {prompt}",
        default_model="opus",
        capabilities=EngineCapabilities(
            supports_fallback=True,
            classifies_rate_limit_severity=False,
        ),
    ),
    "opencode": EnginePreset(
        name="opencode",
        command_template="opencode run --model {model} {prompt}",
        default_model="big-pickle",
        capabilities=EngineCapabilities(
            supports_fallback=True,
            classifies_rate_limit_severity=True,
        ),
    ),
}


class CliAgentEngine:
    """Run an agent command template in the foreground and classify its output."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        command_template: str,
        models: ModelSelection,
        capabilities: EngineCapabilities,
        cwd: Path | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.name = name
        self.command_template = command_template
        self.models = models
        self.capabilities = capabilities
        self.cwd = cwd
        self._echo = echo if echo is not None else _write_stdout

    @classmethod
    def from_preset(
        cls,
        preset_name: str,
        *,
        model: str | None = None,
        fallback_model: str | None = None,
        command_template: str | None = None,
        cwd: Path | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> CliAgentEngine:
        preset = ENGINE_PRESETS.get(preset_name)
        if preset is None:
            raise ConfigurationError(
                f"Invalid engine {preset_name!r}. Must be one of {sorted(ENGINE_PRESETS)}.",
            )
        return cls(
            name=preset.name,
            command_template=command_template or preset.command_template,
            models=ModelSelection(
                primary_model=model or preset.default_model,
                fallback_model=fallback_model or None,
            ),
            capabilities=preset.capabilities,
            cwd=cwd,
            echo=echo,
        )

    @property
    def current_model(self) -> str:
        return self.models.current_model

    def is_available(self) -> bool:
        try:
            head = shlex.split(self.command_template)[0]
        except (ValueError, IndexError):
            return False
        return shutil.which(head) is not None

    def switch_to_fallback(self) -> bool:
        if not self.capabilities.supports_fallback:
            return False
        return self.models.switch_to_fallback()

    def run(self, prompt: str) -> EngineResult:
        with TemporaryDirectory(prefix="ralph-prompt-") as prompt_dir:
            prompt_file = Path(prompt_dir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            argv = build_run_args(
                command_template=self.command_template,
                model=self.current_model,
                prompt=prompt,
                prompt_file=prompt_file,
            )
            try:
                exit_code, output = self._run_subprocess(argv)
            except FileNotFoundError as error:
                raise ConfigurationError(
                    f"'{argv[0]}' command not found. Please install the {self.name} CLI.",
                ) from error
            except OSError as error:
                raise ConfigurationError(f"{self.name} failed to start: {error}") from error

        classification = self._classify(exit_code=exit_code, output=output)
        return EngineResult(
            success=exit_code == 0,
            exit_code=exit_code,
            output=output,
            rate_limit=classification.kind,
            rate_limit_rule=classification.matched_rule,
        )

    def _classify(self, *, exit_code: int, output: str) -> RateLimitClassification:
        if self.capabilities.classifies_rate_limit_severity:
            return classify_rate_limit(output, mode=ClassificationMode.CLASSIFIED)
        if exit_code == 0:
            return NO_RATE_LIMIT
        classification = classify_rate_limit(output, mode=ClassificationMode.BINARY)
        if classification.kind is RateLimitKind.NONE:
            return NO_RATE_LIMIT
        return classification

    def _run_subprocess(self, argv: list[str]) -> tuple[int, str]:
        process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=self.cwd,
            env=os.environ.copy(),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        chunks: list[str] = []
        if process.stdout is None:
            raise RuntimeError(f"{self.name} has no output pipe")
        with process.stdout:
            for line in process.stdout:
                chunks.append(line)
                self._echo(line)
        returncode = process.wait()
        return returncode, "".join(chunks)


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    """Render ``command_template`` into argv with shell-quoted placeholders."""

    stripped = command_template.strip()
    if not stripped:
        raise ConfigurationError("Agent command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ConfigurationError(
            "Agent command template must include {prompt} or {prompt_file}.",
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise ConfigurationError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ConfigurationError("Agent command template rendered empty command.")
    return argv


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()
