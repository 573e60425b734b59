"""Test-gated iteration loop for external coding agents."""

__version__ = "1.0.0"
