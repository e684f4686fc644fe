"""Per-agent conversation session continuity and single-flight locking."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from agent_conductor.errors import NotFoundError
from agent_conductor.storage.base import ConductorStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentSession:
    session_id: str | None
    workspace_path: str


class SessionStore:
    """Reads and writes the single resumable session slot on each agent."""

    def __init__(self, storage: ConductorStorage, *, sessions_root: Path) -> None:
        self.storage = storage
        self.sessions_root = Path(sessions_root)

    def default_workspace(self, agent_id: int) -> Path:
        return self.sessions_root / f"agent-{agent_id}"

    async def get_session(self, agent_id: int, user_id: int) -> AgentSession:
        agent = await self.storage.get_agent(agent_id)
        if agent is None or agent.user_id != user_id:
            raise NotFoundError("Agent", agent_id)

        workspace = Path(agent.workspace_path) if agent.workspace_path else None
        if workspace is None:
            workspace = self.default_workspace(agent_id)
        workspace.mkdir(parents=True, exist_ok=True)

        logger.debug(
            "session event=load agent_id=%s session_id=%s workspace=%s",
            agent_id,
            agent.session_id,
            workspace,
        )
        return AgentSession(session_id=agent.session_id, workspace_path=str(workspace))

    async def save_session(
        self, agent_id: int, session_id: str | None, workspace_path: str | None
    ) -> bool:
        """Persist a session id returned by the engine.

        Returns True when the stored slot changed. An empty id never clears an
        existing slot.
        """
        if not session_id:
            return False
        agent = await self.storage.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        if agent.session_id == session_id and (
            workspace_path is None or agent.workspace_path == workspace_path
        ):
            return False

        changes: dict[str, str] = {"session_id": session_id}
        if workspace_path:
            changes["workspace_path"] = workspace_path
        await self.storage.update_agent(agent_id, changes)
        logger.info("session event=saved agent_id=%s session_id=%s", agent_id, session_id)
        return True


class AgentLocks:
    """Advisory per-agent locks; at most one dispatch per agent at a time."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, agent_id: int) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[agent_id] = lock
        return lock

    def is_busy(self, agent_id: int) -> bool:
        lock = self._locks.get(agent_id)
        return lock is not None and lock.locked()

    def busy_agents(self) -> set[int]:
        return {agent_id for agent_id, lock in self._locks.items() if lock.locked()}

    @asynccontextmanager
    async def hold(self, agent_id: int) -> AsyncIterator[None]:
        lock = self._lock_for(agent_id)
        if lock.locked():
            logger.info("agent_lock event=wait agent_id=%s", agent_id)
        async with lock:
            yield
