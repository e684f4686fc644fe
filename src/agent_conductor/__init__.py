"""Orchestration core for autonomous agents, routines and tasks."""

__version__ = "0.1.0"
