"""LangGraph assembly for one Brain decision cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable

from langgraph.graph import END, StateGraph

from agent_conductor.brain.analytics import AnalyticsRefresher
from agent_conductor.brain.decision import parse_decision
from agent_conductor.brain.documents import DocumentStore
from agent_conductor.brain.state import BrainState
from agent_conductor.capabilities import CAPABILITY_REGISTRY, Capability
from agent_conductor.dispatch.common import DispatchServices
from agent_conductor.dispatch.routines import RoutineDispatcher
from agent_conductor.engine.base import EngineOptions
from agent_conductor.errors import BrainDecisionError, NotFoundError
from agent_conductor.ledger import best_effort
from agent_conductor.prompts import BrainContext, build_brain_prompt

logger = logging.getLogger(__name__)

BRAIN_CAPABILITIES = (Capability.TASKS.value, Capability.CAPABILITIES.value)

Node = Callable[[Any, BrainState], Awaitable[dict[str, Any]]]


def _guarded(step: str) -> Callable[[Node], Node]:
    """Turn a raised exception into an ``error`` entry so the graph can route to failure."""

    def decorator(fn: Node) -> Node:
        @wraps(fn)
        async def wrapper(self: Any, state: BrainState) -> dict[str, Any]:
            try:
                return await fn(self, state)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "brain_cycle event=step_failed step=%s user_id=%s error=%s",
                    step,
                    state.get("user_id"),
                    exc,
                )
                return {"error": str(exc) or type(exc).__name__, "failed_step": step}

        return wrapper

    return decorator


@dataclass
class BrainNodes:
    services: DispatchServices
    documents: DocumentStore
    analytics: AnalyticsRefresher
    routines: RoutineDispatcher

    async def refresh_analytics(self, state: BrainState) -> dict[str, Any]:
        await best_effort(
            self.analytics.refresh(state["user_id"], now=self.services.clock()),
            what=f"analytics_refresh:{state['user_id']}",
        )
        return {}

    @_guarded("gather_context")
    async def gather_context(self, state: BrainState) -> dict[str, Any]:
        svc = self.services
        user_id = state["user_id"]
        documents = await self.documents.get_or_create(user_id)
        routines = await svc.storage.list_routines(user_id=user_id, status="active")
        agents = {agent.id: agent for agent in await svc.storage.list_agents(user_id=user_id)}
        recent = await svc.storage.list_executions(
            user_id=user_id, limit=svc.settings.recent_execution_limit
        )
        connected: list[str] = []
        for spec in CAPABILITY_REGISTRY.values():
            if spec.service_name is None:
                continue
            connection = await svc.storage.get_service_connection(user_id, spec.service_name)
            if connection is not None and connection.status == "connected":
                connected.append(spec.service_name)
        context = BrainContext(
            user_id=user_id,
            documents=documents,
            routines=[routine for routine in routines if routine.agent_id in agents],
            agents=agents,
            recent_executions=recent,
            connected_services=connected,
            task_counts=await svc.lifecycle.count_by_status(user_id),
        )
        return {
            "context": context,
            "prompt": build_brain_prompt(context, recent_limit=svc.settings.recent_execution_limit),
        }

    @_guarded("decide")
    async def decide(self, state: BrainState) -> dict[str, Any]:
        svc = self.services
        user_id = state["user_id"]
        workspace = svc.settings.sessions_root() / f"brain-user-{user_id}"
        workspace.mkdir(parents=True, exist_ok=True)
        capabilities = await svc.capabilities.resolve(
            BRAIN_CAPABILITIES, user_id=user_id, agent_id=None
        )
        result = await svc.engine.run(
            state["prompt"],
            EngineOptions(
                workspace_path=str(workspace),
                max_turns=svc.settings.brain_max_turns,
                capabilities=capabilities,
            ),
        )
        if not result.success:
            raise BrainDecisionError(f"Brain reasoning failed: {result.error}")
        return {"response_text": result.output, "engine_cost_usd": result.cost_usd or 0.0}

    @_guarded("parse")
    async def parse(self, state: BrainState) -> dict[str, Any]:
        decision = parse_decision(state.get("response_text", ""))
        logger.info(
            "brain_cycle event=decision_parsed user_id=%s routine_id=%s priority=%s",
            state["user_id"],
            decision.routine_id,
            decision.priority_level,
        )
        return {"decision": decision}

    @_guarded("validate")
    async def validate(self, state: BrainState) -> dict[str, Any]:
        decision = state["decision"]
        routine = await self.services.storage.get_routine(decision.routine_id)
        if routine is None or routine.user_id != state["user_id"]:
            raise NotFoundError("Routine", decision.routine_id)
        return {"routine": routine}

    @_guarded("persist")
    async def persist(self, state: BrainState) -> dict[str, Any]:
        decision = state["decision"]
        routine = state["routine"]
        record = await self.services.storage.create_brain_decision(
            user_id=state["user_id"],
            action=decision.action,
            reasoning=decision.reasoning,
            routine_id=routine.id,
            agent_id=routine.agent_id,
            priority=decision.priority_level,
            metadata={
                "params": decision.routine_params,
                "expected_outcome": decision.expected_outcome,
            },
        )
        return {"decision_id": record.id}

    @_guarded("dispatch")
    async def dispatch(self, state: BrainState) -> dict[str, Any]:
        decision = state["decision"]
        result = await self.routines.run_routine(
            decision.routine_id,
            user_id=state["user_id"],
            trigger_type="brain",
            params=decision.routine_params or None,
        )
        await self.services.storage.update_brain_decision(
            state["decision_id"], {"execution_id": result.execution_id}
        )
        return {"dispatch": result}

    @_guarded("remember")
    async def remember(self, state: BrainState) -> dict[str, Any]:
        decision = state["decision"]
        routine = state["routine"]
        result = state["dispatch"]
        outcome = "Success" if result.success else "Failed"
        if result.error:
            outcome += f" - {result.error}"
        entry = (
            f"### Brain Decision: {decision.action}\n\n"
            f"**Reasoning:** {decision.reasoning}\n\n"
            f'**Action Taken:** Executed routine "{routine.name}" ({routine.type})\n\n'
            f"**Result:** {outcome}\n\n"
            f"**Cost:** ${result.cost_usd or 0} | **Duration:** {result.duration_ms or 0}ms\n"
        )
        await self.documents.append_memory(state["user_id"], entry, at=self.services.clock())
        return {}

    async def record_failure(self, state: BrainState) -> dict[str, Any]:
        await best_effort(
            self.documents.append_memory(
                state["user_id"],
                f"### Brain Cycle Failed\n\n**Error:** {state.get('error')}",
                at=self.services.clock(),
            ),
            what=f"brain_failure_memory:{state['user_id']}",
        )
        return {}


def _route(next_node: str) -> Callable[[BrainState], str]:
    def _router(state: BrainState) -> str:
        return "failed" if state.get("error") else next_node

    return _router


def build_brain_graph(nodes: BrainNodes):
    graph = StateGraph(BrainState)

    graph.add_node("refresh_analytics", nodes.refresh_analytics)
    graph.add_node("gather_context", nodes.gather_context)
    graph.add_node("decide", nodes.decide)
    graph.add_node("parse", nodes.parse)
    graph.add_node("validate", nodes.validate)
    graph.add_node("persist", nodes.persist)
    graph.add_node("dispatch", nodes.dispatch)
    graph.add_node("remember", nodes.remember)
    graph.add_node("record_failure", nodes.record_failure)

    graph.set_entry_point("refresh_analytics")
    graph.add_edge("refresh_analytics", "gather_context")
    sequence = ["gather_context", "decide", "parse", "validate", "persist", "dispatch", "remember"]
    for current, following in zip(sequence, sequence[1:] + [END]):
        graph.add_conditional_edges(
            current,
            _route(following),
            {"failed": "record_failure", following: following},
        )
    graph.add_edge("record_failure", END)

    return graph.compile()
