from __future__ import annotations

from datetime import UTC, datetime, timedelta

from agent_conductor.brain.documents import DocumentStore
from agent_conductor.dispatch.common import DispatchServices
from agent_conductor.engine.base import EngineResult
from agent_conductor.scheduler import Scheduler, TaskAssignmentListener, order_tasks, routine_is_due
from agent_conductor.storage.memory import InMemoryStorage
from agent_conductor.storage.models import RoutineRecord
from conftest import FakeEngine, make_agent, make_routine

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _routine(**fields) -> RoutineRecord:
    return RoutineRecord(
        id=1, user_id=1, agent_id=1, name="Digest", created_at=NOW, updated_at=NOW, **fields
    )


def test_routine_is_due() -> None:
    assert routine_is_due(_routine(frequency="daily"), NOW)
    assert not routine_is_due(_routine(frequency="manual"), NOW)
    assert not routine_is_due(_routine(frequency="daily", status="paused"), NOW)
    assert routine_is_due(_routine(frequency="daily", next_run_at=NOW - timedelta(minutes=1)), NOW)
    assert not routine_is_due(_routine(frequency="daily", next_run_at=NOW + timedelta(hours=1)), NOW)
    # Failed runs stamp last_run_at without rescheduling.
    assert not routine_is_due(_routine(frequency="daily", last_run_at=NOW - timedelta(days=2)), NOW)
    failed_after_slot = _routine(
        frequency="daily",
        last_run_at=NOW - timedelta(hours=1),
        next_run_at=NOW - timedelta(hours=2),
    )
    assert not routine_is_due(failed_after_slot, NOW)
    succeeded = _routine(
        frequency="daily",
        last_run_at=NOW - timedelta(hours=25),
        next_run_at=NOW - timedelta(hours=1),
    )
    assert routine_is_due(succeeded, NOW)


async def test_check_routines_dispatches_due_routines(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    due = await make_routine(storage, agent, name="Due")
    await make_routine(storage, agent, name="Manual", frequency="manual")
    other_agent = await make_agent(storage, name="Writer")
    await make_routine(storage, other_agent, name="Later", next_run_at=NOW + timedelta(days=1))
    scheduler = Scheduler(services)

    started = await scheduler.check_routines(NOW)
    await scheduler.wait_idle()

    assert started == [due.id]
    [execution] = await storage.list_executions(user_id=1)
    assert execution.trigger_type == "scheduled"
    assert execution.routine_id == due.id


async def test_check_routines_skips_busy_agents(
    storage: InMemoryStorage, services: DispatchServices
) -> None:
    agent = await make_agent(storage)
    await make_routine(storage, agent)
    scheduler = Scheduler(services)

    async with services.locks.hold(agent.id):
        assert await scheduler.check_routines(NOW) == []


async def test_brain_is_due_after_hour_and_interval(
    storage: InMemoryStorage, services: DispatchServices
) -> None:
    scheduler = Scheduler(services)
    morning = NOW.replace(hour=services.settings.brain_hour - 1)

    assert not await scheduler.brain_is_due(1, morning)
    assert await scheduler.brain_is_due(1, NOW)

    decision = await storage.create_brain_decision(user_id=1, action="a", reasoning="r")
    await storage.update_brain_decision(decision.id, {"created_at": NOW})
    assert not await scheduler.brain_is_due(1, NOW + timedelta(hours=1))
    assert await scheduler.brain_is_due(1, NOW + timedelta(hours=25))


async def test_check_brain_runs_for_users_with_documents(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    await DocumentStore(storage).get_or_create(3)
    engine.results.append(EngineResult(success=False, error="no budget"))
    scheduler = Scheduler(services)

    started = await scheduler.check_brain(NOW)
    await scheduler.wait_idle()

    assert started == [3]
    assert len(engine.calls) == 1


def test_order_tasks_puts_critical_first() -> None:
    class Item:
        def __init__(self, priority: str, created_at: datetime) -> None:
            self.priority = priority
            self.created_at = created_at

    low = Item("low", NOW)
    old_high = Item("high", NOW - timedelta(hours=2))
    new_high = Item("high", NOW)
    critical = Item("critical", NOW + timedelta(hours=1))

    assert order_tasks([low, new_high, critical, old_high]) == [critical, old_high, new_high, low]


async def test_listener_starts_highest_priority_task_per_agent(
    storage: InMemoryStorage, services: DispatchServices, engine: FakeEngine
) -> None:
    agent = await make_agent(storage)
    lifecycle = services.lifecycle
    low = await lifecycle.propose_task(user_id=1, title="Tidy README", priority="low")
    urgent = await lifecycle.propose_task(user_id=1, title="Hotfix", priority="critical")
    for task in (low, urgent):
        await lifecycle.approve_task(task.id, assigned_to_agent_id=agent.id)
    listener = TaskAssignmentListener(services)

    started = await listener.poll_once()
    await listener.wait_idle()

    assert started == [(urgent.id, agent.id)]
    assert (await storage.get_task(urgent.id)).status == "completed"
    assert (await storage.get_task(low.id)).status == "approved"

    assert await listener.poll_once() == [(low.id, agent.id)]
    await listener.wait_idle()
    assert (await storage.get_task(low.id)).status == "completed"


async def test_listener_skips_inactive_and_unassigned(
    storage: InMemoryStorage, services: DispatchServices
) -> None:
    sleeping = await make_agent(storage, status="inactive")
    lifecycle = services.lifecycle
    parked = await lifecycle.propose_task(user_id=1, title="Parked")
    await lifecycle.approve_task(parked.id, assigned_to_agent_id=sleeping.id)
    loose = await lifecycle.propose_task(user_id=1, title="Nobody's")
    await lifecycle.approve_task(loose.id)

    assert await TaskAssignmentListener(services).poll_once() == []
