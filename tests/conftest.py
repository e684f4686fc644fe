from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from agent_conductor.config.settings import Settings
from agent_conductor.dispatch.common import DispatchServices
from agent_conductor.engine.base import EngineOptions, EngineResult, ProgressEvent
from agent_conductor.runtime import build_services
from agent_conductor.storage.memory import InMemoryStorage
from agent_conductor.storage.models import AgentRecord, RoutineRecord

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


class FakeEngine:
    """Test-only engine that records each call and replays scripted results."""

    def __init__(self) -> None:
        self.results: list[EngineResult] = []
        self.error: Exception | None = None
        self.calls: list[tuple[str, EngineOptions]] = []
        self.session_id = "sess-1"

    async def run(self, prompt: str, options: EngineOptions) -> EngineResult:
        self.calls.append((prompt, options))
        if options.on_progress is not None:
            await options.on_progress(ProgressEvent(stage="initialized", model="fake-model"))
            await options.on_progress(ProgressEvent(stage="tool_use", tool="Read", turn_count=1))
        if self.error is not None:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return EngineResult(
            success=True,
            output="done",
            session_id=self.session_id,
            turn_count=2,
            cost_usd=0.05,
            duration_ms=1200,
        )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        workspace_root=tmp_path,
        database_url="",
        encryption_key=TEST_KEY,
        task_start_delay_s=0,
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def services(storage: InMemoryStorage, settings: Settings, engine: FakeEngine) -> DispatchServices:
    return build_services(storage, settings=settings, engine=engine)


async def make_agent(storage: InMemoryStorage, *, user_id: int = 1, **fields: Any) -> AgentRecord:
    fields.setdefault("name", "Engineer")
    fields.setdefault("role", "You are a careful software engineer.")
    fields.setdefault("config", {"capabilities": ["tasks"]})
    return await storage.create_agent(user_id=user_id, **fields)


async def make_routine(
    storage: InMemoryStorage, agent: AgentRecord, **fields: Any
) -> RoutineRecord:
    fields.setdefault("name", "Daily triage")
    fields.setdefault("frequency", "daily")
    fields.setdefault("config", {"goal": "Triage new issues"})
    return await storage.create_routine(user_id=agent.user_id, agent_id=agent.id, **fields)
