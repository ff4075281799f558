"""Engine registry: get the right adapter by name."""

from __future__ import annotations

from braid.engines.base import EngineBase
from braid.engines.claude import ClaudeEngine


def get_engine(name: str) -> EngineBase:
    """Return an engine adapter for *name*."""
    match name:
        case "claude":
            return ClaudeEngine()
        case _:
            raise ValueError(f"Unknown engine: {name}")


ENGINE_NAMES = ("claude",)
