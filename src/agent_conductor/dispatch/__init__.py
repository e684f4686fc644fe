"""Routine and task dispatchers."""

from agent_conductor.dispatch.common import DispatchResult, DispatchServices, next_run_after
from agent_conductor.dispatch.routines import RoutineDispatcher
from agent_conductor.dispatch.tasks import TaskDispatcher

__all__ = [
    "DispatchResult",
    "DispatchServices",
    "RoutineDispatcher",
    "TaskDispatcher",
    "next_run_after",
]
