"""Agent backend implementations."""

from ralph_loop.loop.backend.base import AgentEngine, EngineCapabilities, ModelSelection
from ralph_loop.loop.backend.cli_backend import ENGINE_PRESETS, CliAgentEngine, EnginePreset

__all__ = [
    "ENGINE_PRESETS",
    "AgentEngine",
    "CliAgentEngine",
    "EngineCapabilities",
    "EnginePreset",
    "ModelSelection",
]
