"""Task-management tools served to agents over stdio MCP.

Launched by the capability configurator as::

    python -m agent_conductor.capability_servers.tasks --user-id=1 --agent-id=7

Every tool returns a JSON document. Refused transitions come back as
``{"error": ...}`` so the agent can read the reason and carry on.
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from agent_conductor.capability_servers.common import open_storage, tool_error
from agent_conductor.errors import ConductorError
from agent_conductor.lifecycle import TaskLifecycle
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import TASK_PRIORITIES, TaskRecord

logger = logging.getLogger(__name__)

INSTRUCTIONS = """\
Manage the shared task queue. Propose work with create_task_proposal; it waits
in "suggested" until approved. When an approved task is assigned to you, call
start_task, then finish it with complete_task or fail_task. Use block_task when
you need outside input and resume_task once the blocker is gone. Failed tasks
stay failed; propose a new task to try again.
"""

DEFAULT_LIST_LIMIT = 20


def task_summary(task: TaskRecord) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "assigned_to_agent_id": task.assigned_to_agent_id,
        "assigned_to_module_id": task.assigned_to_module_id,
    }


class TaskTools:
    """Lifecycle operations scoped to one user and, optionally, one acting agent."""

    def __init__(
        self, storage: ConductorStorage, *, user_id: int, agent_id: int | None = None
    ) -> None:
        self.storage = storage
        self.lifecycle = TaskLifecycle(storage)
        self.user_id = user_id
        self.agent_id = agent_id

    async def _actor(self, fallback: str | None) -> str:
        if fallback:
            return fallback
        if self.agent_id is not None:
            agent = await self.storage.get_agent(self.agent_id)
            if agent is not None:
                return agent.name
            return f"agent-{self.agent_id}"
        return "brain"

    async def create_task_proposal(
        self,
        title: str,
        description: str,
        suggestion_reasoning: str,
        priority: str = "medium",
        assigned_to_agent_id: int | None = None,
        assigned_to_module_id: int | None = None,
    ) -> dict[str, Any]:
        if priority not in TASK_PRIORITIES:
            priority = "medium"
        task = await self.lifecycle.propose_task(
            user_id=self.user_id,
            title=title,
            description=description,
            suggestion_reasoning=suggestion_reasoning,
            priority=priority,
            proposed_by_agent_id=self.agent_id,
            assigned_to_agent_id=assigned_to_agent_id,
            assigned_to_module_id=assigned_to_module_id,
            changed_by=await self._actor(None),
        )
        return {"success": True, "task": task_summary(task)}

    async def get_available_tasks(
        self,
        status: str | None = None,
        assigned_to_me: bool = False,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> dict[str, Any]:
        tasks = await self.storage.list_tasks(
            user_id=self.user_id,
            status=status,
            assigned_to_agent_id=self.agent_id if assigned_to_me else None,
        )
        if assigned_to_me and self.agent_id is None:
            tasks = []
        tasks = tasks[: max(limit, 0)]
        return {
            "count": len(tasks),
            "filter": {"status": status, "assigned_to_me": assigned_to_me, "limit": limit},
            "tasks": [
                {**task_summary(task), "description": task.description} for task in tasks
            ],
        }

    async def get_task_details(self, task_id: int) -> dict[str, Any]:
        task = await self.lifecycle.get_task(task_id, user_id=self.user_id)
        return {"task": task.model_dump(mode="json")}

    async def start_task(self, task_id: int, agent_name: str | None = None) -> dict[str, Any]:
        task = await self.lifecycle.start_task(
            task_id,
            agent_id=self.agent_id,
            changed_by=await self._actor(agent_name),
            user_id=self.user_id,
        )
        return {"success": True, "task": task_summary(task)}

    async def block_task(
        self,
        task_id: int,
        reason: str,
        agent_name: str | None = None,
        use_status: str = "waiting",
    ) -> dict[str, Any]:
        task = await self.lifecycle.block_task(
            task_id,
            reason=reason,
            changed_by=await self._actor(agent_name),
            waiting=use_status != "blocked",
            user_id=self.user_id,
        )
        return {
            "success": True,
            "message": f"Task paused. Status: {task.status}",
            "task": task_summary(task),
        }

    async def resume_task(
        self, task_id: int, agent_name: str | None = None, resume_note: str | None = None
    ) -> dict[str, Any]:
        actor = await self._actor(agent_name)
        task = await self.lifecycle.resume_task(
            task_id, changed_by=actor, note=resume_note, user_id=self.user_id
        )
        # The assignee picks its own work straight back up.
        if self.agent_id is not None and task.assigned_to_agent_id == self.agent_id:
            task = await self.lifecycle.start_task(
                task_id, agent_id=self.agent_id, changed_by=actor, user_id=self.user_id
            )
        return {
            "success": True,
            "message": f"Task resumed. Status: {task.status}",
            "task": task_summary(task),
        }

    async def complete_task(
        self, task_id: int, completion_summary: str, agent_name: str | None = None
    ) -> dict[str, Any]:
        task = await self.lifecycle.complete_task(
            task_id,
            summary=completion_summary,
            changed_by=await self._actor(agent_name),
            user_id=self.user_id,
        )
        return {"success": True, "task": task_summary(task)}

    async def fail_task(
        self, task_id: int, error_message: str, agent_name: str | None = None
    ) -> dict[str, Any]:
        task = await self.lifecycle.fail_task(
            task_id,
            summary=f"Failed: {error_message}",
            changed_by=await self._actor(agent_name),
            user_id=self.user_id,
        )
        return {"success": True, "task": task_summary(task)}

    async def approve_task(
        self,
        task_id: int,
        approval_reasoning: str,
        assign_to_agent_id: int | None = None,
        assign_to_module_id: int | None = None,
        approved_by: str = "brain",
    ) -> dict[str, Any]:
        task = await self.lifecycle.approve_task(
            task_id,
            user_id=self.user_id,
            approved_by=approved_by,
            approval_reasoning=approval_reasoning,
            assigned_to_agent_id=assign_to_agent_id,
            assigned_to_module_id=assign_to_module_id,
        )
        return {"success": True, "task": task_summary(task)}

    async def reject_task(
        self, task_id: int, rejection_reasoning: str, rejected_by: str = "brain"
    ) -> dict[str, Any]:
        task = await self.lifecycle.reject_task(
            task_id,
            user_id=self.user_id,
            rejected_by=rejected_by,
            rejection_reasoning=rejection_reasoning,
        )
        return {"success": True, "task": task_summary(task)}


async def _call(coro: Any) -> str:
    try:
        payload = await coro
    except (ConductorError, ValueError) as exc:
        return tool_error(exc)
    return json.dumps(payload, indent=2, default=str)


def create_server(tools: TaskTools) -> FastMCP:
    mcp = FastMCP("tasks", instructions=INSTRUCTIONS)

    @mcp.tool()
    async def create_task_proposal(
        title: str,
        description: str,
        suggestion_reasoning: str,
        priority: str = "medium",
        assigned_to_agent_id: int | None = None,
        assigned_to_module_id: int | None = None,
    ) -> str:
        """Propose a new task. It starts as "suggested" and waits for approval.

        Args:
            title: Short task title
            description: What needs doing and how, with full context
            suggestion_reasoning: Why the work matters
            priority: low, medium, high or critical
            assigned_to_agent_id: Optional agent to hand the task to
            assigned_to_module_id: Optional scheduled routine to hand the task to
        """
        return await _call(
            tools.create_task_proposal(
                title,
                description,
                suggestion_reasoning,
                priority,
                assigned_to_agent_id,
                assigned_to_module_id,
            )
        )

    @mcp.tool()
    async def get_available_tasks(
        status: str | None = None, assigned_to_me: bool = False, limit: int = DEFAULT_LIST_LIMIT
    ) -> str:
        """List tasks, optionally filtered by status or restricted to your own."""
        return await _call(tools.get_available_tasks(status, assigned_to_me, limit))

    @mcp.tool()
    async def get_task_details(task_id: int) -> str:
        """Full record of one task, including every reasoning field."""
        return await _call(tools.get_task_details(task_id))

    @mcp.tool()
    async def start_task(task_id: int, agent_name: str | None = None) -> str:
        """Move an approved task to in_progress and claim it."""
        return await _call(tools.start_task(task_id, agent_name))

    @mcp.tool()
    async def block_task(
        task_id: int, reason: str, agent_name: str | None = None, use_status: str = "waiting"
    ) -> str:
        """Pause a task as "waiting" (default) or "blocked", recording why."""
        return await _call(tools.block_task(task_id, reason, agent_name, use_status))

    @mcp.tool()
    async def resume_task(
        task_id: int, agent_name: str | None = None, resume_note: str | None = None
    ) -> str:
        """Resume a paused task once its blocker is resolved.

        The task returns to "approved"; when you are its assignee it is started
        again for you. resume_note is recorded as "Resumed: <note>".
        """
        return await _call(tools.resume_task(task_id, agent_name, resume_note))

    @mcp.tool()
    async def complete_task(
        task_id: int, completion_summary: str, agent_name: str | None = None
    ) -> str:
        """Mark an in-progress task completed with a summary of the outcome."""
        return await _call(tools.complete_task(task_id, completion_summary, agent_name))

    @mcp.tool()
    async def fail_task(task_id: int, error_message: str, agent_name: str | None = None) -> str:
        """Mark an in-progress task failed with the error that stopped it."""
        return await _call(tools.fail_task(task_id, error_message, agent_name))

    @mcp.tool()
    async def approve_task(
        task_id: int,
        approval_reasoning: str,
        assign_to_agent_id: int | None = None,
        assign_to_module_id: int | None = None,
        approved_by: str = "brain",
    ) -> str:
        """Approve a suggested task and optionally assign it.

        Assigning to an agent clears any routine assignment and vice versa.
        """
        return await _call(
            tools.approve_task(
                task_id,
                approval_reasoning,
                assign_to_agent_id,
                assign_to_module_id,
                approved_by,
            )
        )

    @mcp.tool()
    async def reject_task(task_id: int, rejection_reasoning: str, rejected_by: str = "brain") -> str:
        """Decline a suggested task with reasoning."""
        return await _call(tools.reject_task(task_id, rejection_reasoning, rejected_by))

    return mcp


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Task-management MCP server")
    parser.add_argument("--user-id", type=int, required=True)
    parser.add_argument("--agent-id", type=int, default=None)
    args = parser.parse_args(argv)

    storage = open_storage()
    logger.info(
        "capability_server event=start name=tasks user_id=%s agent_id=%s",
        args.user_id,
        args.agent_id,
    )
    create_server(TaskTools(storage, user_id=args.user_id, agent_id=args.agent_id)).run()


if __name__ == "__main__":
    main()
