from __future__ import annotations

import asyncio

import pytest

from agent_conductor.errors import LedgerError, NotFoundError
from agent_conductor.ledger import ExecutionLedger, best_effort
from agent_conductor.storage.memory import InMemoryStorage
from agent_conductor.streaming import LogBroadcaster, StreamEvent


async def test_logs_since_returns_only_newer_entries_in_order(storage: InMemoryStorage) -> None:
    ledger = ExecutionLedger(storage)
    execution = await ledger.start_execution(user_id=1, trigger_type="manual", routine_id=3)
    other = await ledger.start_execution(user_id=1, trigger_type="manual", routine_id=4)

    first = await ledger.append_log(execution.id, "Agent initialized", stage="initialized")
    await ledger.append_log(other.id, "unrelated")
    await ledger.append_log(execution.id, "Using tool: Bash", stage="tool_use")
    await ledger.append_log(execution.id, "Done", stage="completed")

    newer = await ledger.get_logs_since(execution.id, first.id)

    assert [log.message for log in newer] == ["Using tool: Bash", "Done"]
    assert [log.message for log in await ledger.get_logs_since(execution.id)][0] == (
        "Agent initialized"
    )


async def test_execution_is_finalised_exactly_once(storage: InMemoryStorage) -> None:
    ledger = ExecutionLedger(storage)
    execution = await ledger.start_execution(user_id=1, trigger_type="scheduled", routine_id=1)
    assert execution.status == "running"

    finished = await ledger.finish_execution(
        execution.id, success=False, error_message="timeout", cost_usd=0.2
    )

    assert finished.status == "failed"
    assert finished.error_message == "timeout"
    assert finished.completed_at is not None
    assert finished.duration_ms is not None and finished.duration_ms >= 0
    with pytest.raises(LedgerError):
        await ledger.finish_execution(execution.id, success=True)


async def test_finishing_unknown_execution_is_not_found(storage: InMemoryStorage) -> None:
    with pytest.raises(NotFoundError):
        await ExecutionLedger(storage).finish_execution(404, success=True)


async def test_broadcaster_receives_logs_and_completion(storage: InMemoryStorage) -> None:
    broadcaster = LogBroadcaster()
    ledger = ExecutionLedger(storage, broadcaster=broadcaster)
    execution = await ledger.start_execution(user_id=7, trigger_type="manual")
    by_execution = broadcaster.subscribe_execution(execution.id)
    by_user = broadcaster.subscribe_user(7)

    await ledger.append_log(execution.id, "hello", user_id=7)
    await ledger.finish_execution(execution.id, success=True, output="ok")

    log_event = by_execution.get_nowait()
    assert log_event.kind == "log"
    assert log_event.payload["message"] == "hello"
    assert by_execution.get_nowait().kind == "complete"
    assert [by_user.get_nowait().kind, by_user.get_nowait().kind] == ["log", "complete"]

    broadcaster.unsubscribe(by_execution)
    assert broadcaster.subscriber_count(execution.id) == 0


def test_full_subscriber_queue_drops_events() -> None:
    broadcaster = LogBroadcaster(queue_size=1)
    queue = broadcaster.subscribe_execution(1)

    broadcaster.publish(StreamEvent(kind="log", execution_id=1, user_id=None, payload={"id": 1}))
    broadcaster.publish(StreamEvent(kind="log", execution_id=1, user_id=None, payload={"id": 2}))

    assert queue.qsize() == 1
    assert queue.get_nowait().payload == {"id": 1}


async def test_best_effort_swallows_and_returns_none() -> None:
    async def broken() -> int:
        raise RuntimeError("database went away")

    assert await best_effort(broken(), what="test") is None
    assert await best_effort(asyncio.sleep(0, result=5), what="test") == 5


async def test_log_never_raises_for_progress(storage: InMemoryStorage) -> None:
    ledger = ExecutionLedger(storage)

    assert await ledger.log(1, "bad level", level="loud") is None
