from __future__ import annotations

import pytest

from agent_conductor.dispatch.common import DispatchServices
from agent_conductor.dispatch.tasks import DEFAULT_COMPLETION_SUMMARY, TaskDispatcher
from agent_conductor.engine.base import EngineOptions, EngineResult
from agent_conductor.errors import InactiveError, InvalidTransitionError, OwnershipError
from agent_conductor.storage.memory import InMemoryStorage
from conftest import FakeEngine, make_agent


async def _approved_task(services: DispatchServices, agent_id: int | None, **fields):
    lifecycle = services.lifecycle
    task = await lifecycle.propose_task(
        user_id=1,
        title="Fix flaky checkout test",
        description="tests/test_checkout.py fails one run in ten",
        suggestion_reasoning="CI is red twice a day",
        **fields,
    )
    return await lifecycle.approve_task(
        task.id, user_id=1, approval_reasoning="Unblocks releases", assigned_to_agent_id=agent_id
    )


async def test_approved_task_runs_to_completion(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    task = await _approved_task(services, agent.id)
    engine.results.append(
        EngineResult(success=True, output="Fixed the race in the fixture", session_id="sess-9")
    )

    result = await TaskDispatcher(services).run_task(task.id, agent.id, user_id=1)

    assert result.success is True
    done = await storage.get_task(task.id)
    assert done.status == "completed"
    assert done.completion_summary == "Fixed the race in the fixture"
    assert done.started_at is not None
    assert done.completed_at is not None
    assert done.execution_id == result.execution_id
    assert done.last_status_change_by == agent.name

    execution = await storage.get_execution(result.execution_id)
    assert execution.status == "completed"
    assert execution.trigger_type == "task_assignment"
    assert execution.task_id == task.id

    logs = await storage.get_execution_logs_since(result.execution_id)
    assert logs[0].stage == "started"
    assert "Fix flaky checkout test" in logs[0].message

    prompt, _ = engine.calls[0]
    assert "CI is red twice a day" in prompt
    assert "Unblocks releases" in prompt

    stored_agent = await storage.get_agent(agent.id)
    assert stored_agent.total_task_completions == 1
    assert stored_agent.session_id == "sess-9"


async def test_empty_output_uses_default_summary(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    task = await _approved_task(services, agent.id)
    engine.results.append(EngineResult(success=True, output=""))

    await TaskDispatcher(services).run_task(task.id, agent.id, user_id=1)

    assert (await storage.get_task(task.id)).completion_summary == DEFAULT_COMPLETION_SUMMARY


async def test_engine_failure_fails_task(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    task = await _approved_task(services, agent.id)
    engine.results.append(EngineResult(success=False, error="max turns reached"))

    result = await TaskDispatcher(services).run_task(task.id, agent.id, user_id=1)

    assert result.success is False
    failed = await storage.get_task(task.id)
    assert failed.status == "failed"
    assert failed.completion_summary == "Failed: max turns reached"
    assert failed.last_status_change_by == agent.name
    assert (await storage.get_agent(agent.id)).total_task_completions == 0


async def test_engine_exception_fails_task_and_execution(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    task = await _approved_task(services, agent.id)
    engine.error = RuntimeError("subprocess died")

    with pytest.raises(RuntimeError, match="subprocess died"):
        await TaskDispatcher(services).run_task(task.id, agent.id, user_id=1)

    failed = await storage.get_task(task.id)
    assert failed.status == "failed"
    assert failed.last_status_change_by == "system"
    assert failed.completion_summary == "Failed: subprocess died"
    execution = await storage.get_execution(failed.execution_id)
    assert execution.status == "failed"
    assert execution.error_message == "subprocess died"


async def test_agent_may_close_its_own_task(
    storage: InMemoryStorage, services: DispatchServices
) -> None:
    agent = await make_agent(storage)
    task = await _approved_task(services, agent.id)

    class ClosingEngine(FakeEngine):
        async def run(self, prompt: str, options: EngineOptions) -> EngineResult:
            await services.lifecycle.complete_task(
                task.id, summary="Closed from inside the run", changed_by=agent.name
            )
            return EngineResult(success=True, output="all good")

    services.engine = ClosingEngine()

    result = await TaskDispatcher(services).run_task(task.id, agent.id, user_id=1)

    assert result.success is True
    done = await storage.get_task(task.id)
    assert done.status == "completed"
    assert done.completion_summary == "Closed from inside the run"
    assert (await storage.get_agent(agent.id)).total_task_completions == 1


async def test_unapproved_task_is_refused(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    task = await services.lifecycle.propose_task(
        user_id=1, title="Idea", assigned_to_agent_id=agent.id
    )

    with pytest.raises(InvalidTransitionError):
        await TaskDispatcher(services).run_task(task.id, agent.id, user_id=1)

    assert (await storage.get_task(task.id)).status == "suggested"
    assert await storage.list_executions(user_id=1) == []
    assert engine.calls == []


async def test_task_assigned_elsewhere_is_refused(
    storage: InMemoryStorage, services: DispatchServices
) -> None:
    owner = await make_agent(storage, name="Owner")
    other = await make_agent(storage, name="Other")
    task = await _approved_task(services, owner.id)

    with pytest.raises(OwnershipError):
        await TaskDispatcher(services).run_task(task.id, other.id, user_id=1)
    assert (await storage.get_task(task.id)).status == "approved"


async def test_inactive_agent_is_refused(
    storage: InMemoryStorage, services: DispatchServices
) -> None:
    agent = await make_agent(storage, status="inactive")
    task = await _approved_task(services, agent.id)

    with pytest.raises(InactiveError):
        await TaskDispatcher(services).run_task(task.id, agent.id, user_id=1)
    assert (await storage.get_task(task.id)).status == "approved"
