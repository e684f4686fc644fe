"""Run one routine through the execution engine."""

from __future__ import annotations

import logging
from typing import Any

from agent_conductor.capabilities import Capability, describe_capabilities, merge_capability_config
from agent_conductor.dispatch.common import (
    DispatchResult,
    DispatchServices,
    next_run_after,
    progress_to_ledger,
    resolve_max_turns,
)
from agent_conductor.engine.base import EngineOptions
from agent_conductor.errors import InactiveError, NotFoundError
from agent_conductor.ledger import best_effort
from agent_conductor.prompts import build_routine_prompt
from agent_conductor.repository import RepositoryError, materialize_repository

logger = logging.getLogger(__name__)


class RoutineDispatcher:
    def __init__(self, services: DispatchServices) -> None:
        self.services = services

    async def run_routine(
        self,
        routine_id: int,
        *,
        user_id: int,
        trigger_type: str = "manual",
        params: dict[str, Any] | None = None,
    ) -> DispatchResult:
        """Dispatch a routine and wait for the engine to finish.

        ``params`` are layered over the routine's config for this run only
        (the Brain uses this to sharpen the goal).
        """
        svc = self.services
        routine = await svc.storage.get_routine(routine_id)
        if routine is None or routine.user_id != user_id:
            raise NotFoundError("Routine", routine_id)

        async with svc.locks.hold(routine.agent_id):
            # Re-read under the lock; status may have changed while waiting.
            routine = await svc.storage.get_routine(routine_id)
            if routine is None:
                raise NotFoundError("Routine", routine_id)
            if routine.status != "active":
                raise InactiveError(f"Routine {routine_id} is {routine.status}")
            agent = await svc.storage.get_agent(routine.agent_id)
            if agent is None or agent.user_id != user_id:
                raise NotFoundError("Agent", routine.agent_id)
            if agent.status != "active":
                raise InactiveError(f"Agent {agent.id} is {agent.status}")

            run_config = {**routine.config, **(params or {})}
            run_routine = routine.model_copy(update={"config": run_config})

            execution = await svc.ledger.start_execution(
                user_id=user_id,
                trigger_type=trigger_type,
                routine_id=routine.id,
                agent_id=agent.id,
                metadata={"params": params} if params else None,
            )
            logger.info(
                "routine_run event=start routine_id=%s agent_id=%s execution_id=%s trigger=%s",
                routine.id,
                agent.id,
                execution.id,
                trigger_type,
            )
            finalised = False

            try:
                session = await svc.sessions.get_session(agent.id, user_id)

                suppress: set[Capability] = set()
                repository = run_config.get("repository")
                if repository:
                    try:
                        snapshot = await materialize_repository(repository, session.workspace_path)
                    except RepositoryError as exc:
                        logger.warning(
                            "routine_run event=repository_failed routine_id=%s error=%s",
                            routine.id,
                            exc,
                        )
                        await svc.ledger.log(
                            execution.id,
                            f"Repository refresh failed: {exc}",
                            level="warning",
                            stage="setup",
                            user_id=user_id,
                        )
                    else:
                        suppress.add(Capability.GITHUB)
                        await svc.ledger.log(
                            execution.id,
                            "Repository ready",
                            stage="setup",
                            metadata={"repository": repository, "action": snapshot.action},
                            user_id=user_id,
                        )

                names, options = merge_capability_config(agent.config, run_config)
                capabilities = await svc.capabilities.resolve(
                    names,
                    user_id=user_id,
                    agent_id=agent.id,
                    options=options,
                    suppress=suppress,
                )
                await svc.ledger.log(
                    execution.id,
                    f"Configured {len(capabilities)} capabilities",
                    stage="setup",
                    metadata={"capabilities": describe_capabilities(capabilities)},
                    user_id=user_id,
                )

                prompt = build_routine_prompt(agent, run_routine, now=svc.clock())
                result = await svc.engine.run(
                    prompt,
                    EngineOptions(
                        workspace_path=session.workspace_path,
                        max_turns=resolve_max_turns(svc.settings, agent, run_config),
                        capabilities=capabilities,
                        resume_session_id=session.session_id,
                        on_progress=progress_to_ledger(svc.ledger, execution.id, user_id=user_id),
                    ),
                )

                await svc.sessions.save_session(agent.id, result.session_id, session.workspace_path)
                await svc.ledger.finish_execution(
                    execution.id,
                    success=result.success,
                    output=result.output or None,
                    error_message=None if result.success else (result.error or "Routine run failed"),
                    cost_usd=result.cost_usd,
                    duration_ms=result.duration_ms,
                    metadata={"turn_count": result.turn_count},
                )
                finalised = True

                ran_at = svc.clock()
                if result.success:
                    await svc.storage.update_routine(
                        routine.id,
                        {
                            "last_run_at": ran_at,
                            "next_run_at": next_run_after(routine.frequency, ran_at),
                        },
                    )
                    await svc.storage.increment_agent_counter(agent.id, "total_routine_runs")
                else:
                    await svc.storage.update_routine(routine.id, {"last_run_at": ran_at})
            except Exception as exc:
                logger.exception(
                    "routine_run event=error routine_id=%s execution_id=%s", routine.id, execution.id
                )
                if not finalised:
                    await best_effort(
                        svc.ledger.finish_execution(
                            execution.id, success=False, error_message=str(exc) or type(exc).__name__
                        ),
                        what=f"finish_execution:{execution.id}",
                    )
                    await best_effort(
                        svc.storage.update_routine(routine.id, {"last_run_at": svc.clock()}),
                        what=f"routine_last_run:{routine.id}",
                    )
                raise

            logger.info(
                "routine_run event=completed routine_id=%s execution_id=%s success=%s cost_usd=%s",
                routine.id,
                execution.id,
                result.success,
                result.cost_usd,
            )
            return DispatchResult.from_engine(execution.id, result)
