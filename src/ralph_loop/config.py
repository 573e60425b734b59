"""Runtime configuration for the iteration loop."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

ENV_PREFIX = "RALPH_"
GLOBAL_ENV_FILE = Path("~/.config/ralph/ralph.env")
PROJECT_ENV_FILE = Path(".ralph/ralph.env")
ENGINE_NAMES = ("claude", "opencode")


@dataclass(slots=True)
class EngineSettings:
    """Agent engine selection."""

    engine: str = "opencode"
    claude_model: str = "opus"
    opencode_model: str = "big-pickle"
    fallback_model: str | None = None
    command_template: str | None = None

    @property
    def model(self) -> str:
        return self.claude_model if self.engine == "claude" else self.opencode_model


@dataclass(slots=True)
class LoopBudgetSettings:
    """Iteration, failure and rate-limit budgets."""

    max_iterations: int = 10
    sleep_seconds: float = 2.0
    max_consecutive_failures: int = 3
    soft_limit_retries: int = 3
    soft_limit_wait_seconds: float = 30.0
    autofix_attempts: int | None = None

    @property
    def effective_autofix_attempts(self) -> int:
        if self.autofix_attempts is None:
            return self.max_consecutive_failures
        return self.autofix_attempts


@dataclass(slots=True)
class VerificationSettings:
    """Test verification gate settings."""

    test_command: str | None = None
    skip_test_verify: bool = False
    skip_commit: bool = False
    mark_complete_on_pass: bool = False


@dataclass(slots=True)
class StorageSettings:
    """Where logs, progress and resume state are written."""

    log_dir: Path = Path("~/.ralph/logs")
    progress_dir: Path = Path("~/.ralph/progress")
    state_dir: Path = Path("~/.ralph/state")

    def log_file(self, project: str) -> Path:
        return self.log_dir.expanduser() / f"ralph-{project}.log"

    def progress_file(self, project: str) -> Path:
        return self.progress_dir.expanduser() / f"progress-{project}.txt"

    def state_directory(self, project: str) -> Path:
        return self.state_dir.expanduser() / project


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = field(default_factory=Path.cwd)
    prd_path: Path = Path("PRD.md")
    engine: EngineSettings = field(default_factory=EngineSettings)
    budgets: LoopBudgetSettings = field(default_factory=LoopBudgetSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @property
    def project_name(self) -> str:
        return self.project_dir.resolve().name

    @property
    def resolved_prd_path(self) -> Path:
        if self.prd_path.is_absolute():
            return self.prd_path
        return self.project_dir / self.prd_path

    @classmethod
    def from_env(
        cls,
        project_dir: Path | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        global_env_file: Path | None = None,
    ) -> Settings:
        """Layer the global env file, the project env file and the environment.

        Later sources win. Only ``RALPH_``-prefixed keys are read.
        """

        root = project_dir or Path.cwd()
        source = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for layer in (
            load_env_file((global_env_file or GLOBAL_ENV_FILE).expanduser()),
            load_env_file(root / PROJECT_ENV_FILE),
            source,
        ):
            values.update({key: value for key, value in layer.items() if key.startswith(ENV_PREFIX)})
        env = _EnvReader(values)

        autofix_raw = env.get("RALPH_AUTOFIX_ATTEMPTS")
        return cls(
            project_dir=root,
            prd_path=Path(env.get("RALPH_PRD_PATH") or "PRD.md"),
            engine=EngineSettings(
                engine=(env.get("RALPH_ENGINE") or "opencode").strip().lower(),
                claude_model=env.get("RALPH_CLAUDE_MODEL") or "opus",
                opencode_model=env.get("RALPH_OPENCODE_MODEL") or "big-pickle",
                fallback_model=env.get("RALPH_FALLBACK_MODEL") or None,
                command_template=env.get("RALPH_COMMAND_TEMPLATE") or None,
            ),
            budgets=LoopBudgetSettings(
                max_iterations=env.integer("RALPH_MAX_ITERATIONS", 10),
                sleep_seconds=env.number("RALPH_SLEEP_SECONDS", 2.0),
                max_consecutive_failures=env.integer("RALPH_MAX_CONSECUTIVE_FAILURES", 3),
                soft_limit_retries=env.integer("RALPH_SOFT_LIMIT_RETRIES", 3),
                soft_limit_wait_seconds=env.number("RALPH_SOFT_LIMIT_WAIT_SECONDS", 30.0),
                autofix_attempts=(
                    env.integer("RALPH_AUTOFIX_ATTEMPTS", 0) if autofix_raw else None
                ),
            ),
            verification=VerificationSettings(
                test_command=env.get("RALPH_TEST_CMD") or None,
                skip_test_verify=env.flag("RALPH_SKIP_TEST_VERIFY", default=False),
                skip_commit=env.flag("RALPH_SKIP_COMMIT", default=False),
                mark_complete_on_pass=env.flag("RALPH_MARK_COMPLETE_ON_PASS", default=False),
            ),
            storage=StorageSettings(
                log_dir=Path(env.get("RALPH_LOG_DIR") or "~/.ralph/logs"),
                progress_dir=Path(env.get("RALPH_PROGRESS_DIR") or "~/.ralph/progress"),
                state_dir=Path(env.get("RALPH_STATE_DIR") or "~/.ralph/state"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot run with."""

        if self.engine.engine not in ENGINE_NAMES:
            raise ValueError(
                f"Invalid RALPH_ENGINE: {self.engine.engine!r}. Must be one of {', '.join(ENGINE_NAMES)}.",
            )
        if not self.engine.model.strip():
            raise ValueError("Agent model must not be empty.")
        if self.budgets.max_iterations == 0 or self.budgets.max_iterations < -1:
            raise ValueError("RALPH_MAX_ITERATIONS must be a positive integer or -1 (infinite).")
        if self.budgets.sleep_seconds < 0:
            raise ValueError("RALPH_SLEEP_SECONDS must be >= 0.")
        if self.budgets.max_consecutive_failures <= 0:
            raise ValueError("RALPH_MAX_CONSECUTIVE_FAILURES must be > 0.")
        if self.budgets.soft_limit_retries < 0:
            raise ValueError("RALPH_SOFT_LIMIT_RETRIES must be >= 0.")
        if self.budgets.soft_limit_wait_seconds < 0:
            raise ValueError("RALPH_SOFT_LIMIT_WAIT_SECONDS must be >= 0.")
        if self.budgets.autofix_attempts is not None and self.budgets.autofix_attempts < 0:
            raise ValueError("RALPH_AUTOFIX_ATTEMPTS must be >= 0.")

    def effective_test_command(self) -> str | None:
        if self.verification.skip_test_verify:
            return None
        if self.verification.test_command and self.verification.test_command.strip():
            return self.verification.test_command.strip()
        return detect_test_command(self.project_dir)


def load_env_file(path: Path) -> dict[str, str]:
    """Read ``KEY=VALUE`` pairs with python-dotenv; a missing file yields nothing.

    Keys declared without a value are dropped.
    """

    if not path.is_file():
        return {}
    values = dotenv_values(path, encoding="utf-8")
    return {key: value for key, value in values.items() if value is not None}


def detect_test_command(project_dir: Path) -> str | None:
    """Guess the project's test command from well-known marker files."""

    package_json = project_dir / "package.json"
    if package_json.is_file() and _has_test_script(package_json):
        if (project_dir / "bun.lockb").exists() or (project_dir / "bun.lock").exists():
            return "bun test"
        if (project_dir / "pnpm-lock.yaml").exists():
            return "pnpm test"
        if (project_dir / "yarn.lock").exists():
            return "yarn test"
        return "npm test"

    if any((project_dir / name).exists() for name in ("vitest.config.ts", "vitest.config.js")):
        return "npx vitest run"
    if any((project_dir / name).exists() for name in ("jest.config.ts", "jest.config.js")):
        return "npx jest"
    if (project_dir / "pytest.ini").exists() or (project_dir / "pyproject.toml").exists():
        return "pytest"
    if (project_dir / "go.mod").exists():
        return "go test ./..."
    if (project_dir / "Cargo.toml").exists():
        return "cargo test"
    return None


def _has_test_script(package_json: Path) -> bool:
    try:
        payload = json.loads(package_json.read_text("utf-8"))
    except (OSError, ValueError):
        return False
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    return isinstance(scripts, dict) and bool(scripts.get("test"))


class _EnvReader:
    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = values

    def get(self, name: str) -> str | None:
        value = self._values.get(name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def integer(self, name: str, default: int) -> int:
        value = self.get(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as error:
            raise ValueError(f"Invalid integer value for {name}: {value!r}") from error

    def number(self, name: str, default: float) -> float:
        value = self.get(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as error:
            raise ValueError(f"Invalid number value for {name}: {value!r}") from error

    def flag(self, name: str, *, default: bool) -> bool:
        return _env_bool(name, self.get(name), default=default)


def _env_bool(name: str, value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
