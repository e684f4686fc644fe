"""Pieces shared by the routine and task dispatchers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from agent_conductor.capabilities import CapabilityConfigurator
from agent_conductor.config.settings import Settings
from agent_conductor.engine.base import EngineResult, ExecutionEngine, ProgressCallback, ProgressEvent
from agent_conductor.ledger import ExecutionLedger
from agent_conductor.lifecycle import TaskLifecycle
from agent_conductor.sessions import AgentLocks, SessionStore
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import AgentRecord

Clock = Callable[[], datetime]

FREQUENCY_INTERVALS: dict[str, timedelta] = {
    "auto": timedelta(hours=6),
    "daily": timedelta(hours=24),
    "weekly": timedelta(days=7),
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def next_run_after(frequency: str, ran_at: datetime) -> datetime | None:
    """Next scheduled run for a frequency; manual and unknown frequencies never schedule."""
    interval = FREQUENCY_INTERVALS.get(frequency)
    return ran_at + interval if interval is not None else None


def resolve_max_turns(
    settings: Settings, agent: AgentRecord, routine_config: dict[str, Any] | None = None
) -> int:
    for source in (routine_config or {}, agent.config or {}):
        value = source.get("max_turns")
        if value:
            return int(value)
    return settings.default_max_turns


@dataclass
class DispatchResult:
    success: bool
    execution_id: int
    output: str = ""
    error: str | None = None
    session_id: str | None = None
    turn_count: int = 0
    cost_usd: float | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_engine(cls, execution_id: int, result: EngineResult) -> "DispatchResult":
        return cls(
            success=result.success,
            execution_id=execution_id,
            output=result.output,
            error=result.error,
            session_id=result.session_id,
            turn_count=result.turn_count,
            cost_usd=result.cost_usd,
            duration_ms=result.duration_ms,
        )


@dataclass
class DispatchServices:
    """Collaborators every dispatcher needs, built once per process."""

    storage: ConductorStorage
    settings: Settings
    engine: ExecutionEngine
    ledger: ExecutionLedger
    sessions: SessionStore
    capabilities: CapabilityConfigurator
    lifecycle: TaskLifecycle
    locks: AgentLocks
    clock: Clock = utc_now


def progress_to_ledger(
    ledger: ExecutionLedger, execution_id: int, *, user_id: int | None = None
) -> ProgressCallback:
    """Build a progress callback that records engine events without ever raising."""

    async def _on_progress(event: ProgressEvent) -> None:
        metadata: dict[str, Any] = dict(event.data)
        level = "info"
        if event.stage == "initialized":
            message = f"Agent initialized with model {event.model or 'default'}"
            metadata["model"] = event.model
        elif event.stage == "thinking":
            message = event.message or "Thinking"
            level = "debug"
        elif event.stage == "tool_use":
            message = f"Using tool: {event.tool}"
            metadata["tool"] = event.tool
        elif event.stage == "completed":
            message = event.message or "Execution completed"
        else:
            message = event.message or event.stage
            if event.substage:
                metadata["substage"] = event.substage
        if event.turn_count is not None:
            metadata["turn_count"] = event.turn_count

        await ledger.log(
            execution_id,
            message,
            level=level,
            stage=event.stage,
            metadata=metadata or None,
            user_id=user_id,
        )

    return _on_progress
