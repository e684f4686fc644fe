"""Storage backends and models."""

from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.memory import InMemoryStorage
from agent_conductor.storage.postgres import PostgresStorage

__all__ = [
    "ConductorStorage",
    "InMemoryStorage",
    "PostgresStorage",
]
