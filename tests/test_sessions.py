from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agent_conductor.errors import NotFoundError
from agent_conductor.sessions import AgentLocks, SessionStore
from agent_conductor.storage.memory import InMemoryStorage
from conftest import make_agent


async def test_new_agent_gets_default_workspace(storage: InMemoryStorage, tmp_path: Path) -> None:
    agent = await make_agent(storage)
    store = SessionStore(storage, sessions_root=tmp_path / "agent-sessions")

    session = await store.get_session(agent.id, user_id=1)

    assert session.session_id is None
    assert session.workspace_path == str(tmp_path / "agent-sessions" / f"agent-{agent.id}")
    assert Path(session.workspace_path).is_dir()


async def test_session_belongs_to_agent_owner(storage: InMemoryStorage, tmp_path: Path) -> None:
    agent = await make_agent(storage, user_id=1)
    store = SessionStore(storage, sessions_root=tmp_path)

    with pytest.raises(NotFoundError):
        await store.get_session(agent.id, user_id=2)


async def test_save_session_only_writes_changes(storage: InMemoryStorage, tmp_path: Path) -> None:
    agent = await make_agent(storage)
    store = SessionStore(storage, sessions_root=tmp_path)
    workspace = str(tmp_path / "ws")

    assert await store.save_session(agent.id, None, workspace) is False
    assert await store.save_session(agent.id, "", workspace) is False
    assert await store.save_session(agent.id, "sess-a", workspace) is True
    assert await store.save_session(agent.id, "sess-a", workspace) is False
    assert await store.save_session(agent.id, "sess-b", workspace) is True

    session = await store.get_session(agent.id, user_id=1)
    assert session.session_id == "sess-b"
    assert session.workspace_path == workspace


async def test_agent_locks_serialise_work_per_agent() -> None:
    locks = AgentLocks()
    order: list[str] = []

    async def work(name: str, agent_id: int) -> None:
        async with locks.hold(agent_id):
            order.append(f"{name}:start")
            await asyncio.sleep(0.01)
            order.append(f"{name}:end")

    async with locks.hold(1):
        assert locks.is_busy(1)
        assert locks.busy_agents() == {1}
        assert not locks.is_busy(2)

    await asyncio.gather(work("a", 1), work("b", 1))

    assert order == ["a:start", "a:end", "b:start", "b:end"]
    assert not locks.is_busy(1)
