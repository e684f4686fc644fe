"""Typed state carried through one Brain cycle."""

from typing import Any, TypedDict


class BrainState(TypedDict, total=False):
    user_id: int
    started_at: float
    context: Any
    prompt: str
    response_text: str
    engine_cost_usd: float
    decision: Any
    routine: Any
    decision_id: int
    dispatch: Any
    error: str
    failed_step: str


def initial_state(user_id: int, started_at: float) -> BrainState:
    return {"user_id": user_id, "started_at": started_at, "engine_cost_usd": 0.0}
