"""Execution engine contract and adapters."""

from agent_conductor.engine.base import (
    EngineOptions,
    EngineResult,
    ExecutionEngine,
    ProgressCallback,
    ProgressEvent,
)

__all__ = [
    "EngineOptions",
    "EngineResult",
    "ExecutionEngine",
    "ProgressCallback",
    "ProgressEvent",
]
