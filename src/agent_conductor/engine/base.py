"""Execution engine contract shared by dispatchers and the Brain."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from agent_conductor.capabilities import CapabilityDescriptor


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification emitted while the engine works."""

    stage: str
    message: str = ""
    tool: str | None = None
    turn_count: int | None = None
    model: str | None = None
    substage: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]


@dataclass
class EngineOptions:
    workspace_path: str
    max_turns: int
    capabilities: dict[str, CapabilityDescriptor] = field(default_factory=dict)
    resume_session_id: str | None = None
    system_prompt: str | None = None
    on_progress: ProgressCallback | None = None


@dataclass
class EngineResult:
    success: bool
    output: str = ""
    session_id: str | None = None
    turn_count: int = 0
    cost_usd: float | None = None
    duration_ms: int | None = None
    model: str | None = None
    error: str | None = None


class ExecutionEngine(Protocol):
    async def run(self, prompt: str, options: EngineOptions) -> EngineResult: ...
