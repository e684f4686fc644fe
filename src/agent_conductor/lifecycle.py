"""Task approval state machine.

Tasks move ``suggested -> approved -> in_progress -> completed`` on the happy
path. A suggestion may be rejected, work in flight may fail or pause in
``blocked``/``waiting``, and paused work goes back to ``approved`` before it
can be started again. Only the assigned agent may start a task.
``completed``, ``rejected`` and ``failed`` are terminal; redoing failed work
means proposing a new task.

Audit text fields are written once: a later transition never overwrites a
reasoning or summary that was already recorded.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from agent_conductor.errors import InvalidTransitionError, NotFoundError, OwnershipError
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import TASK_STATUSES, TaskRecord

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "suggested": frozenset({"approved", "rejected"}),
    "approved": frozenset({"in_progress", "blocked", "waiting"}),
    "in_progress": frozenset({"completed", "failed", "blocked", "waiting"}),
    "blocked": frozenset({"approved"}),
    "waiting": frozenset({"approved"}),
    "completed": frozenset(),
    "rejected": frozenset(),
    "failed": frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(current, frozenset())


class TaskLifecycle:
    def __init__(self, storage: ConductorStorage) -> None:
        self.storage = storage

    async def get_task(self, task_id: int, *, user_id: int | None = None) -> TaskRecord:
        task = await self.storage.get_task(task_id)
        if task is None or (user_id is not None and task.user_id != user_id):
            raise NotFoundError("Task", task_id)
        return task

    async def update_task_status(
        self,
        task_id: int,
        new_status: str,
        *,
        changed_by: str,
        user_id: int | None = None,
        acting_agent_id: int | None = None,
        approval_reasoning: str | None = None,
        rejection_reasoning: str | None = None,
        completion_summary: str | None = None,
        blocked_reason: str | None = None,
        assigned_to_agent_id: int | None = None,
        assigned_to_module_id: int | None = None,
        execution_id: int | None = None,
    ) -> TaskRecord:
        if new_status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {new_status}")
        task = await self.get_task(task_id, user_id=user_id)
        current = task.status

        if not can_transition(current, new_status):
            raise InvalidTransitionError(task_id, current, new_status)

        if new_status == "in_progress" and (
            acting_agent_id is None or task.assigned_to_agent_id != acting_agent_id
        ):
            raise OwnershipError(
                f"Task {task_id} can only be started by its assigned agent "
                f"({task.assigned_to_agent_id}), not {acting_agent_id or changed_by}"
            )

        changes: dict[str, Any] = {}
        now = datetime.now(tz=UTC)
        audit = {
            "approval_reasoning": approval_reasoning,
            "rejection_reasoning": rejection_reasoning,
            "completion_summary": completion_summary,
        }
        for name, value in audit.items():
            if value is not None and getattr(task, name) is None:
                changes[name] = value

        # A task has one assignee: naming an agent clears the module and vice versa.
        if assigned_to_agent_id is not None:
            changes["assigned_to_agent_id"] = assigned_to_agent_id
            changes["assigned_to_module_id"] = None
        elif assigned_to_module_id is not None:
            changes["assigned_to_module_id"] = assigned_to_module_id
            changes["assigned_to_agent_id"] = None
        if execution_id is not None:
            changes["execution_id"] = execution_id
        if blocked_reason is not None:
            changes["blocked_reason"] = blocked_reason

        changes["status"] = new_status
        changes["last_status_change_at"] = now
        changes["last_status_change_by"] = changed_by
        if new_status == "approved" and task.approved_at is None:
            changes["approved_at"] = now
            changes["approved_by"] = changed_by
        elif new_status == "in_progress" and task.started_at is None:
            changes["started_at"] = now
        elif new_status in {"blocked", "waiting"}:
            changes["blocked_at"] = now
        elif new_status in TERMINAL_STATUSES:
            changes["completed_at"] = now

        updated = await self.storage.update_task(task_id, changes)
        logger.info(
            "task_status event=transition task_id=%s from=%s to=%s changed_by=%s",
            task_id,
            current,
            new_status,
            changed_by,
        )
        return updated

    async def link_execution(self, task_id: int, execution_id: int) -> TaskRecord:
        """Record the execution working on a task without touching its status."""
        await self.get_task(task_id)
        return await self.storage.update_task(task_id, {"execution_id": execution_id})

    async def propose_task(
        self,
        *,
        user_id: int,
        title: str,
        description: str = "",
        suggestion_reasoning: str | None = None,
        priority: str = "medium",
        proposed_by_agent_id: int | None = None,
        assigned_to_agent_id: int | None = None,
        assigned_to_module_id: int | None = None,
        brain_decision_id: int | None = None,
        changed_by: str = "user",
    ) -> TaskRecord:
        now = datetime.now(tz=UTC)
        task = await self.storage.create_task(
            user_id=user_id,
            title=title,
            description=description,
            suggestion_reasoning=suggestion_reasoning,
            priority=priority,
            status="suggested",
            proposed_by_agent_id=proposed_by_agent_id,
            assigned_to_agent_id=assigned_to_agent_id,
            assigned_to_module_id=assigned_to_module_id,
            brain_decision_id=brain_decision_id,
            last_status_change_at=now,
            last_status_change_by=changed_by,
        )
        logger.info(
            "task_status event=proposed task_id=%s user_id=%s proposed_by_agent_id=%s",
            task.id,
            user_id,
            proposed_by_agent_id,
        )
        return task

    async def approve_task(
        self,
        task_id: int,
        *,
        user_id: int | None = None,
        approved_by: str = "user",
        approval_reasoning: str | None = None,
        assigned_to_agent_id: int | None = None,
        assigned_to_module_id: int | None = None,
    ) -> TaskRecord:
        task = await self.get_task(task_id, user_id=user_id)
        if task.status != "suggested":
            raise InvalidTransitionError(
                task_id, task.status, "approved", "only suggested tasks can be approved"
            )
        return await self.update_task_status(
            task_id,
            "approved",
            changed_by=approved_by,
            user_id=user_id,
            approval_reasoning=approval_reasoning,
            assigned_to_agent_id=assigned_to_agent_id,
            assigned_to_module_id=assigned_to_module_id,
        )

    async def reject_task(
        self,
        task_id: int,
        *,
        user_id: int | None = None,
        rejected_by: str = "user",
        rejection_reasoning: str | None = None,
    ) -> TaskRecord:
        task = await self.get_task(task_id, user_id=user_id)
        if task.status != "suggested":
            raise InvalidTransitionError(
                task_id, task.status, "rejected", "only suggested tasks can be rejected"
            )
        return await self.update_task_status(
            task_id,
            "rejected",
            changed_by=rejected_by,
            user_id=user_id,
            rejection_reasoning=rejection_reasoning,
        )

    async def assign_task(
        self,
        task_id: int,
        *,
        user_id: int | None = None,
        agent_id: int | None = None,
        module_id: int | None = None,
        changed_by: str = "user",
    ) -> TaskRecord:
        if (agent_id is None) == (module_id is None):
            raise ValueError("Provide exactly one of agent_id or module_id")
        task = await self.get_task(task_id, user_id=user_id)
        if task.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(task_id, task.status, task.status, "task is closed")
        changes: dict[str, Any] = {
            "assigned_to_agent_id": agent_id,
            "assigned_to_module_id": module_id,
            "last_status_change_by": changed_by,
        }
        return await self.storage.update_task(task_id, changes)

    async def start_task(
        self,
        task_id: int,
        *,
        agent_id: int | None,
        changed_by: str,
        user_id: int | None = None,
    ) -> TaskRecord:
        return await self.update_task_status(
            task_id,
            "in_progress",
            changed_by=changed_by,
            user_id=user_id,
            acting_agent_id=agent_id,
        )

    async def block_task(
        self,
        task_id: int,
        *,
        reason: str,
        changed_by: str,
        waiting: bool = False,
        user_id: int | None = None,
    ) -> TaskRecord:
        return await self.update_task_status(
            task_id,
            "waiting" if waiting else "blocked",
            changed_by=changed_by,
            user_id=user_id,
            blocked_reason=reason,
        )

    async def resume_task(
        self,
        task_id: int,
        *,
        changed_by: str,
        note: str | None = None,
        user_id: int | None = None,
    ) -> TaskRecord:
        """Send paused work back to ``approved``; the assignee then starts it again."""
        return await self.update_task_status(
            task_id,
            "approved",
            changed_by=changed_by,
            user_id=user_id,
            blocked_reason=f"Resumed: {note}" if note else None,
        )

    async def complete_task(
        self, task_id: int, *, summary: str, changed_by: str, user_id: int | None = None
    ) -> TaskRecord:
        return await self.update_task_status(
            task_id,
            "completed",
            changed_by=changed_by,
            user_id=user_id,
            completion_summary=summary,
        )

    async def fail_task(
        self, task_id: int, *, summary: str, changed_by: str, user_id: int | None = None
    ) -> TaskRecord:
        return await self.update_task_status(
            task_id,
            "failed",
            changed_by=changed_by,
            user_id=user_id,
            completion_summary=summary,
        )

    async def count_by_status(self, user_id: int) -> dict[str, int]:
        counts = {status: 0 for status in TASK_STATUSES}
        for task in await self.storage.list_tasks(user_id=user_id):
            counts[task.status] += 1
        return counts
