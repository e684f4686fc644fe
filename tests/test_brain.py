from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from agent_conductor.brain.analytics import collect_metrics, detect_anomalies
from agent_conductor.brain.decision import parse_decision
from agent_conductor.brain.documents import DEFAULT_MEMORY, DocumentStore
from agent_conductor.brain.loop import BrainLoop
from agent_conductor.dispatch.common import DispatchServices
from agent_conductor.engine.base import EngineResult
from agent_conductor.errors import BrainDecisionError
from agent_conductor.storage.memory import InMemoryStorage
from agent_conductor.storage.models import ExecutionRecord, RoutineRecord
from conftest import FakeEngine, make_agent, make_routine


def _decision_text(routine_id: int, **overrides) -> str:
    payload = {
        "action": "Run issue triage",
        "reasoning": "Open bug count doubled this week",
        "routine_id": routine_id,
        "routine_params": {"goal": "Triage crash reports first"},
        "expected_outcome": "Every new crash has an owner",
        "priority_level": "high",
    }
    payload.update(overrides)
    return f"After reviewing the context:\n```json\n{json.dumps(payload)}\n```\nDone."


def test_parse_decision_from_fenced_block() -> None:
    decision = parse_decision(_decision_text(3))

    assert decision.routine_id == 3
    assert decision.routine_params == {"goal": "Triage crash reports first"}
    assert decision.priority_level == "high"


def test_parse_decision_from_bare_object_with_legacy_names() -> None:
    text = 'Decision: {"action": "Ship", "reasoning": "Ready", "module_id": 8, "module_params": {"a": 1}, "priority_level": "URGENT"}'

    decision = parse_decision(text)

    assert decision.routine_id == 8
    assert decision.routine_params == {"a": 1}
    assert decision.priority_level == "medium"


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("", "empty response"),
        ("I would rather wait until tomorrow.", "No JSON decision"),
        ('{"action": "Ship", "routine_id": 2}', "Missing required fields: reasoning"),
        ('{"reasoning": "because"}', "Missing required fields: action, routine_id"),
    ],
)
def test_parse_decision_rejects_incomplete_output(text: str, message: str) -> None:
    with pytest.raises(BrainDecisionError, match=message):
        parse_decision(text)


async def test_cycle_decides_dispatches_and_remembers(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    routine = await make_routine(storage, agent)
    engine.results.extend(
        [
            EngineResult(success=True, output=_decision_text(routine.id), cost_usd=0.02),
            EngineResult(success=True, output="Triaged 4 crashes", session_id="sess-2", cost_usd=0.3),
        ]
    )

    result = await BrainLoop(services).run_cycle(1)

    assert result.success is True
    assert result.cost_usd == pytest.approx(0.32)
    assert result.decision["action"] == "Run issue triage"

    brain_prompt, brain_options = engine.calls[0]
    assert f"### Daily triage (ID: {routine.id})" in brain_prompt
    assert set(brain_options.capabilities) == {"tasks", "capabilities"}
    assert brain_options.max_turns == services.settings.brain_max_turns
    assert brain_options.workspace_path.endswith("brain-user-1")

    routine_prompt, _ = engine.calls[1]
    assert "Triage crash reports first" in routine_prompt

    execution = await storage.get_execution(result.dispatch.execution_id)
    assert execution.trigger_type == "brain"
    assert execution.status == "completed"

    decision = await storage.get_latest_brain_decision(1)
    assert decision.id == result.decision_id
    assert decision.execution_id == execution.id
    assert decision.routine_id == routine.id
    assert decision.agent_id == agent.id
    assert decision.priority == "high"
    assert decision.metadata["expected_outcome"] == "Every new crash has an owner"

    documents = await storage.get_document_store(1)
    assert documents.memory_md.startswith(DEFAULT_MEMORY)
    assert "### Brain Decision: Run issue triage" in documents.memory_md
    assert 'Executed routine "Daily triage"' in documents.memory_md
    assert "**Result:** Success" in documents.memory_md
    assert documents.analytics_md.startswith("# Analytics Summary")


async def test_cycle_with_unknown_routine_records_failure(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    await make_routine(storage, agent)
    engine.results.append(EngineResult(success=True, output=_decision_text(99)))

    result = await BrainLoop(services).run_cycle(1)

    assert result.success is False
    assert result.failed_step == "validate"
    assert "Routine 99 not found" in result.error
    assert len(engine.calls) == 1
    assert await storage.get_latest_brain_decision(1) is None
    assert await storage.list_executions(user_id=1) == []
    memory = (await storage.get_document_store(1)).memory_md
    assert "### Brain Cycle Failed" in memory
    assert "Routine 99 not found" in memory


async def test_cycle_with_failed_reasoning_stops_before_parsing(
    services: DispatchServices, engine: FakeEngine
) -> None:
    engine.results.append(EngineResult(success=False, error="overloaded"))

    result = await BrainLoop(services).run_cycle(1)

    assert result.success is False
    assert result.failed_step == "decide"
    assert result.error == "Brain reasoning failed: overloaded"


async def test_cycle_with_unparseable_reply(services: DispatchServices, engine: FakeEngine) -> None:
    engine.results.append(EngineResult(success=True, output="Let's wait and see."))

    result = await BrainLoop(services).run_cycle(1)

    assert result.success is False
    assert result.failed_step == "parse"


async def test_failed_routine_run_is_still_remembered(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    routine = await make_routine(storage, agent)
    engine.results.extend(
        [
            EngineResult(success=True, output=_decision_text(routine.id)),
            EngineResult(success=False, error="max turns reached"),
        ]
    )

    result = await BrainLoop(services).run_cycle(1)

    assert result.success is True
    assert result.dispatch.success is False
    memory = (await storage.get_document_store(1)).memory_md
    assert "**Result:** Failed - max turns reached" in memory


async def test_documents_get_defaults_and_append_memory(storage: InMemoryStorage) -> None:
    documents = DocumentStore(storage)
    at = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    created = await documents.get_or_create(5)
    assert created.vision_md.startswith("# Vision")

    await documents.append_memory(5, "first note", at=at)
    updated = await documents.append_memory(5, "second note", at=at + timedelta(hours=1))

    assert updated.memory_md == (
        DEFAULT_MEMORY
        + "\n## 2026-03-01T09:00:00+00:00\nfirst note\n"
        + "\n## 2026-03-01T10:00:00+00:00\nsecond note\n"
    )


def test_metrics_and_anomalies() -> None:
    now = datetime(2026, 3, 8, tzinfo=UTC)
    routine = RoutineRecord(
        id=1, user_id=1, agent_id=1, name="Deploy check", created_at=now, updated_at=now
    )
    executions = [
        ExecutionRecord(
            id=index,
            user_id=1,
            routine_id=1,
            status=status,
            started_at=now - timedelta(days=1),
            duration_ms=1000 * index,
            cost_usd=0.5,
        )
        for index, status in enumerate(["failed", "failed", "completed"], start=1)
    ]

    metrics = collect_metrics([routine], executions, now=now)

    assert metrics["summary"]["total_executions"] == 3
    assert metrics["summary"]["total_failed"] == 2
    assert metrics["routines"][0]["avg_duration_ms"] == 2000
    anomalies = detect_anomalies(metrics)
    assert any(item.startswith("High failure rate: 66.7%") for item in anomalies)
    assert any(item.startswith("Significant engine costs: $1.50") for item in anomalies)
