"""Brain decision loop entry point."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from agent_conductor.brain.analytics import AnalyticsRefresher
from agent_conductor.brain.documents import DocumentStore
from agent_conductor.brain.graph import BrainNodes, build_brain_graph
from agent_conductor.brain.state import initial_state
from agent_conductor.dispatch.common import DispatchResult, DispatchServices
from agent_conductor.dispatch.routines import RoutineDispatcher
from agent_conductor.ledger import best_effort

logger = logging.getLogger(__name__)


@dataclass
class BrainCycleResult:
    success: bool
    duration_ms: int
    decision: dict[str, Any] | None = None
    decision_id: int | None = None
    dispatch: DispatchResult | None = None
    error: str | None = None
    failed_step: str | None = None
    cost_usd: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


class BrainLoop:
    """Run Brain cycles. ``run_cycle`` reports failures instead of raising."""

    def __init__(
        self,
        services: DispatchServices,
        *,
        routines: RoutineDispatcher | None = None,
        documents: DocumentStore | None = None,
    ) -> None:
        self.services = services
        self.documents = documents or DocumentStore(services.storage)
        self.routines = routines or RoutineDispatcher(services)
        self.analytics = AnalyticsRefresher(services.storage, self.documents)
        self.graph = build_brain_graph(
            BrainNodes(
                services=services,
                documents=self.documents,
                analytics=self.analytics,
                routines=self.routines,
            )
        )

    async def run_cycle(self, user_id: int) -> BrainCycleResult:
        started_at = time.perf_counter()
        logger.info("brain_cycle event=start user_id=%s", user_id)
        try:
            state: dict[str, Any] = await self.graph.ainvoke(initial_state(user_id, started_at))
        except Exception as exc:  # noqa: BLE001
            logger.exception("brain_cycle event=crashed user_id=%s", user_id)
            await best_effort(
                self.documents.append_memory(
                    user_id, f"### Brain Cycle Failed\n\n**Error:** {exc}"
                ),
                what=f"brain_failure_memory:{user_id}",
            )
            return BrainCycleResult(
                success=False, duration_ms=_duration_ms(started_at), error=str(exc)
            )

        duration_ms = _duration_ms(started_at)
        dispatch: DispatchResult | None = state.get("dispatch")
        cost = float(state.get("engine_cost_usd") or 0.0) + float(
            (dispatch.cost_usd if dispatch else 0.0) or 0.0
        )
        decision = state.get("decision")
        if state.get("error"):
            logger.warning(
                "brain_cycle event=failed user_id=%s step=%s error=%s",
                user_id,
                state.get("failed_step"),
                state["error"],
            )
            return BrainCycleResult(
                success=False,
                duration_ms=duration_ms,
                decision=decision.model_dump() if decision else None,
                decision_id=state.get("decision_id"),
                dispatch=dispatch,
                error=state["error"],
                failed_step=state.get("failed_step"),
                cost_usd=cost,
            )

        logger.info(
            "brain_cycle event=completed user_id=%s decision_id=%s execution_id=%s duration_ms=%s",
            user_id,
            state.get("decision_id"),
            dispatch.execution_id if dispatch else None,
            duration_ms,
        )
        return BrainCycleResult(
            success=True,
            duration_ms=duration_ms,
            decision=decision.model_dump() if decision else None,
            decision_id=state.get("decision_id"),
            dispatch=dispatch,
            cost_usd=cost,
        )


def _duration_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)
