"""Brain decision loop."""

from agent_conductor.brain.loop import BrainCycleResult, BrainLoop

__all__ = ["BrainCycleResult", "BrainLoop"]
