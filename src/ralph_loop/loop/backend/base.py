"""Agent invocation port implemented by engine backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ralph_loop.loop.models import EngineResult


@dataclass(slots=True, frozen=True)
class EngineCapabilities:
    """Capability flags the controller reads instead of engine identity."""

    supports_fallback: bool = False
    classifies_rate_limit_severity: bool = False


@dataclass(slots=True)
class ModelSelection:
    """Primary/fallback model state owned by one engine for one run."""

    primary_model: str
    fallback_model: str | None = None
    using_fallback: bool = False

    @property
    def current_model(self) -> str:
        if self.using_fallback and self.fallback_model:
            return self.fallback_model
        return self.primary_model

    def switch_to_fallback(self) -> bool:
        """Switch once; the switch is irreversible for the run."""

        if self.using_fallback or not self.fallback_model:
            return False
        if self.fallback_model == self.primary_model:
            return False
        self.using_fallback = True
        return True


class AgentEngine(Protocol):
    """Protocol implemented by agent backends."""

    name: str
    capabilities: EngineCapabilities

    @property
    def current_model(self) -> str:
        """Model used by the next ``run`` call."""

    def is_available(self) -> bool:
        """Return whether the agent can be launched at all."""

    def run(self, prompt: str) -> EngineResult:
        """Run the agent once with ``prompt`` and classify its output."""

    def switch_to_fallback(self) -> bool:
        """Switch to the fallback model; ``False`` when none remains."""
