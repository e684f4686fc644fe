from __future__ import annotations

import itertools

import pytest

from agent_conductor.errors import InvalidTransitionError, OwnershipError
from agent_conductor.lifecycle import TERMINAL_STATUSES, TaskLifecycle, can_transition
from agent_conductor.storage.memory import InMemoryStorage
from agent_conductor.storage.models import TASK_STATUSES

ALLOWED = {
    "suggested": {"approved", "rejected"},
    "approved": {"in_progress", "blocked", "waiting"},
    "in_progress": {"completed", "failed", "blocked", "waiting"},
    "blocked": {"approved"},
    "waiting": {"approved"},
    "completed": set(),
    "rejected": set(),
    "failed": set(),
}

OWNER = 7


async def _task_in(storage: InMemoryStorage, status: str, **fields):
    task = await storage.create_task(user_id=1, title="Fix login bug", **fields)
    if status != "suggested":
        task = await storage.update_task(task.id, {"status": status})
    return task


def test_table_covers_every_status() -> None:
    assert set(ALLOWED) == set(TASK_STATUSES)


@pytest.mark.parametrize(
    ("current", "requested"), list(itertools.product(sorted(ALLOWED), sorted(ALLOWED)))
)
async def test_update_task_status_follows_transition_table(
    storage: InMemoryStorage, current: str, requested: str
) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, current, assigned_to_agent_id=OWNER)

    if requested in ALLOWED[current]:
        updated = await lifecycle.update_task_status(
            task.id, requested, changed_by="user", acting_agent_id=OWNER
        )
        assert updated.status == requested
    else:
        with pytest.raises(InvalidTransitionError):
            await lifecycle.update_task_status(
                task.id, requested, changed_by="user", acting_agent_id=OWNER
            )
        assert (await storage.get_task(task.id)).status == current


@pytest.mark.parametrize("status", sorted(ALLOWED))
def test_same_state_updates_are_refused(status: str) -> None:
    assert not can_transition(status, status)


def test_work_states_are_only_reachable_through_approval() -> None:
    into_progress = {status for status in TASK_STATUSES if can_transition(status, "in_progress")}
    assert into_progress == {"approved"}
    for closing in ("completed", "failed"):
        assert {status for status in TASK_STATUSES if can_transition(status, closing)} == {
            "in_progress"
        }
    assert not can_transition("suggested", "in_progress")


def test_terminal_states_accept_nothing() -> None:
    assert TERMINAL_STATUSES == {"completed", "rejected", "failed"}
    for terminal in TERMINAL_STATUSES:
        assert not any(can_transition(terminal, target) for target in TASK_STATUSES)


async def test_approve_records_audit_fields_and_module_assignment(
    storage: InMemoryStorage,
) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await lifecycle.propose_task(
        user_id=1,
        title="Update API docs",
        description="Document the v2 endpoints",
        suggestion_reasoning="Customers are confused by v2",
        priority="high",
        proposed_by_agent_id=3,
        changed_by="Engineer",
    )
    assert task.status == "suggested"

    approved = await lifecycle.approve_task(
        task.id,
        user_id=1,
        approved_by="brain",
        approval_reasoning="Docs unblock the launch",
        assigned_to_module_id=5,
    )

    assert approved.status == "approved"
    assert approved.approved_by == "brain"
    assert approved.approved_at is not None
    assert approved.suggestion_reasoning == "Customers are confused by v2"
    assert approved.approval_reasoning == "Docs unblock the launch"
    assert approved.assigned_to_module_id == 5
    assert approved.last_status_change_by == "brain"


async def test_approving_onto_one_assignee_clears_the_other(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    onto_module = await lifecycle.propose_task(
        user_id=1, title="Nightly report", assigned_to_agent_id=3
    )
    onto_agent = await lifecycle.propose_task(
        user_id=1, title="Fix flaky test", assigned_to_module_id=9
    )

    by_module = await lifecycle.approve_task(onto_module.id, assigned_to_module_id=5)
    by_agent = await lifecycle.approve_task(onto_agent.id, assigned_to_agent_id=3)

    assert (by_module.assigned_to_module_id, by_module.assigned_to_agent_id) == (5, None)
    assert (by_agent.assigned_to_agent_id, by_agent.assigned_to_module_id) == (3, None)


async def test_approve_rejects_tasks_that_are_not_suggested(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, "in_progress")

    with pytest.raises(InvalidTransitionError, match="only suggested tasks"):
        await lifecycle.approve_task(task.id)


@pytest.mark.parametrize("terminal", ["failed", "completed", "rejected"])
async def test_closed_tasks_cannot_be_reapproved(storage: InMemoryStorage, terminal: str) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, terminal, assigned_to_agent_id=OWNER)

    with pytest.raises(InvalidTransitionError):
        await lifecycle.approve_task(task.id)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.update_task_status(task.id, "approved", changed_by="user")
    with pytest.raises(InvalidTransitionError):
        await lifecycle.resume_task(task.id, changed_by="user", note="try again")
    assert (await storage.get_task(task.id)).status == terminal


async def test_failed_work_is_redone_as_a_new_proposal(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    failed = await _task_in(storage, "in_progress", assigned_to_agent_id=OWNER)
    await lifecycle.fail_task(failed.id, summary="Vendor API down", changed_by="Engineer")

    retry = await lifecycle.propose_task(
        user_id=1,
        title="Fix login bug (retry)",
        suggestion_reasoning=f"Task {failed.id} failed: Vendor API down",
        assigned_to_agent_id=OWNER,
    )
    await lifecycle.approve_task(retry.id, approval_reasoning="Vendor is back")
    started = await lifecycle.start_task(retry.id, agent_id=OWNER, changed_by="Engineer")

    assert started.status == "in_progress"
    assert (await storage.get_task(failed.id)).status == "failed"


async def test_audit_text_is_written_once(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await lifecycle.propose_task(user_id=1, title="Ship it")
    await lifecycle.approve_task(task.id, approval_reasoning="first")

    later = await lifecycle.update_task_status(
        task.id, "blocked", changed_by="user", approval_reasoning="second"
    )

    assert later.status == "blocked"
    assert later.approval_reasoning == "first"


async def test_start_requires_the_assigned_agent(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    unowned = await _task_in(storage, "approved")
    owned = await _task_in(storage, "approved", assigned_to_agent_id=OWNER)

    with pytest.raises(OwnershipError):
        await lifecycle.start_task(unowned.id, agent_id=3, changed_by="Engineer")
    with pytest.raises(OwnershipError):
        await lifecycle.start_task(owned.id, agent_id=None, changed_by="user")
    with pytest.raises(OwnershipError):
        await lifecycle.update_task_status(owned.id, "in_progress", changed_by="user")

    assert (await storage.get_task(unowned.id)).assigned_to_agent_id is None
    assert (await storage.get_task(owned.id)).status == "approved"

    started = await lifecycle.start_task(owned.id, agent_id=OWNER, changed_by="Engineer")
    assert started.status == "in_progress"
    assert started.started_at is not None


async def test_start_refuses_agent_that_does_not_own_task(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, "approved", assigned_to_agent_id=1)

    with pytest.raises(OwnershipError):
        await lifecycle.start_task(task.id, agent_id=2, changed_by="Other")
    assert (await storage.get_task(task.id)).status == "approved"


async def test_block_and_resume(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, "in_progress", assigned_to_agent_id=4)

    blocked = await lifecycle.block_task(
        task.id, reason="Waiting on API keys", changed_by="Engineer", waiting=True
    )
    assert blocked.status == "waiting"
    assert blocked.blocked_reason == "Waiting on API keys"
    assert blocked.blocked_at is not None

    resumed = await lifecycle.resume_task(task.id, changed_by="Engineer", note="Keys arrived")
    assert resumed.status == "approved"
    assert resumed.blocked_reason == "Resumed: Keys arrived"

    restarted = await lifecycle.start_task(task.id, agent_id=4, changed_by="Engineer")
    assert restarted.status == "in_progress"


async def test_link_execution_keeps_status(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, "in_progress", assigned_to_agent_id=OWNER)

    linked = await lifecycle.link_execution(task.id, 42)

    assert linked.execution_id == 42
    assert linked.status == "in_progress"


async def test_complete_stamps_summary_and_completion_time(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, "in_progress")

    done = await lifecycle.complete_task(task.id, summary="Merged PR #12", changed_by="Engineer")

    assert done.status == "completed"
    assert done.completion_summary == "Merged PR #12"
    assert done.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        await lifecycle.fail_task(task.id, summary="late failure", changed_by="system")


async def test_assign_task_requires_exactly_one_target(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    task = await _task_in(storage, "approved")

    with pytest.raises(ValueError):
        await lifecycle.assign_task(task.id)
    with pytest.raises(ValueError):
        await lifecycle.assign_task(task.id, agent_id=1, module_id=2)

    assigned = await lifecycle.assign_task(task.id, agent_id=7)
    assert assigned.assigned_to_agent_id == 7
    assert assigned.assigned_to_module_id is None


async def test_count_by_status(storage: InMemoryStorage) -> None:
    lifecycle = TaskLifecycle(storage)
    await _task_in(storage, "suggested")
    await _task_in(storage, "approved")
    await _task_in(storage, "approved")
    await storage.create_task(user_id=2, title="someone else's")

    counts = await lifecycle.count_by_status(1)

    assert counts["approved"] == 2
    assert counts["suggested"] == 1
    assert counts["completed"] == 0
    assert set(counts) == set(TASK_STATUSES)
