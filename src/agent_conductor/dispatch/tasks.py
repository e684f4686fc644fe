"""Run one approved task on its assigned agent."""

from __future__ import annotations

import asyncio
import logging

from agent_conductor.capabilities import describe_capabilities, merge_capability_config
from agent_conductor.dispatch.common import (
    DispatchResult,
    DispatchServices,
    progress_to_ledger,
    resolve_max_turns,
)
from agent_conductor.engine.base import EngineOptions
from agent_conductor.errors import InactiveError, InvalidTransitionError, NotFoundError, OwnershipError
from agent_conductor.ledger import best_effort
from agent_conductor.prompts import build_task_prompt

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_SUMMARY = "Task completed successfully by agent"


class TaskDispatcher:
    def __init__(self, services: DispatchServices) -> None:
        self.services = services

    async def run_task(self, task_id: int, agent_id: int, *, user_id: int) -> DispatchResult:
        svc = self.services

        async with svc.locks.hold(agent_id):
            agent = await svc.storage.get_agent(agent_id)
            if agent is None or agent.user_id != user_id:
                raise NotFoundError("Agent", agent_id)
            if agent.status != "active":
                raise InactiveError(f"Agent {agent_id} is {agent.status}")

            task = await svc.lifecycle.get_task(task_id, user_id=user_id)
            if task.status != "approved":
                raise InvalidTransitionError(
                    task_id, task.status, "in_progress", "only approved tasks can be run"
                )
            if task.assigned_to_agent_id != agent_id:
                raise OwnershipError(
                    f"Task {task_id} is assigned to agent {task.assigned_to_agent_id}, "
                    f"not agent {agent_id}"
                )

            task = await svc.lifecycle.start_task(
                task_id, agent_id=agent_id, changed_by=agent.name, user_id=user_id
            )
            execution = None
            finalised = False
            try:
                execution = await svc.ledger.start_execution(
                    user_id=user_id,
                    trigger_type="task_assignment",
                    task_id=task_id,
                    agent_id=agent_id,
                )
                task = await svc.lifecycle.link_execution(task_id, execution.id)
                logger.info(
                    "task_run event=start task_id=%s agent_id=%s execution_id=%s",
                    task_id,
                    agent_id,
                    execution.id,
                )
                await svc.ledger.log(
                    execution.id,
                    f"Task execution started: {task.title}",
                    stage="started",
                    metadata={"task_id": task_id, "agent_id": agent_id},
                    user_id=user_id,
                )
                if svc.settings.task_start_delay_s > 0:
                    await asyncio.sleep(svc.settings.task_start_delay_s)

                session = await svc.sessions.get_session(agent_id, user_id)
                names, options = merge_capability_config(agent.config)
                capabilities = await svc.capabilities.resolve(
                    names, user_id=user_id, agent_id=agent_id, options=options
                )
                await svc.ledger.log(
                    execution.id,
                    f"Configured {len(capabilities)} capabilities",
                    stage="setup",
                    metadata={"capabilities": describe_capabilities(capabilities)},
                    user_id=user_id,
                )

                result = await svc.engine.run(
                    build_task_prompt(agent, task, now=svc.clock()),
                    EngineOptions(
                        workspace_path=session.workspace_path,
                        max_turns=resolve_max_turns(svc.settings, agent),
                        capabilities=capabilities,
                        resume_session_id=session.session_id,
                        on_progress=progress_to_ledger(svc.ledger, execution.id, user_id=user_id),
                    ),
                )

                await svc.sessions.save_session(agent_id, result.session_id, session.workspace_path)
                error_message = None if result.success else (result.error or "Task run failed")
                await svc.ledger.finish_execution(
                    execution.id,
                    success=result.success,
                    output=result.output or None,
                    error_message=error_message,
                    cost_usd=result.cost_usd,
                    duration_ms=result.duration_ms,
                    metadata={"turn_count": result.turn_count},
                )
                finalised = True

                current = await svc.lifecycle.get_task(task_id, user_id=user_id)
                if current.status != "in_progress":
                    # The agent already moved the task itself through the tasks capability.
                    logger.info(
                        "task_run event=status_set_by_agent task_id=%s status=%s",
                        task_id,
                        current.status,
                    )
                    if result.success and current.status == "completed":
                        await svc.storage.increment_agent_counter(agent_id, "total_task_completions")
                elif result.success:
                    await svc.lifecycle.complete_task(
                        task_id,
                        summary=result.output or DEFAULT_COMPLETION_SUMMARY,
                        changed_by=agent.name,
                        user_id=user_id,
                    )
                    await svc.storage.increment_agent_counter(agent_id, "total_task_completions")
                else:
                    await svc.lifecycle.fail_task(
                        task_id,
                        summary=f"Failed: {error_message}",
                        changed_by=agent.name,
                        user_id=user_id,
                    )
            except Exception as exc:
                logger.exception("task_run event=error task_id=%s agent_id=%s", task_id, agent_id)
                error_text = str(exc) or type(exc).__name__
                if execution is not None and not finalised:
                    await best_effort(
                        svc.ledger.finish_execution(
                            execution.id, success=False, error_message=error_text
                        ),
                        what=f"finish_execution:{execution.id}",
                    )
                await best_effort(
                    svc.lifecycle.fail_task(
                        task_id,
                        summary=f"Failed: {error_text}",
                        changed_by="system",
                        user_id=user_id,
                    ),
                    what=f"fail_task:{task_id}",
                )
                raise

            logger.info(
                "task_run event=completed task_id=%s execution_id=%s success=%s",
                task_id,
                execution.id,
                result.success,
            )
            return DispatchResult.from_engine(execution.id, result)
