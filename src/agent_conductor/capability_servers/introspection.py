"""Read-only view of a user's agents, routines and capability catalogue.

The Brain uses these tools to see what it can dispatch before deciding.
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from agent_conductor.capabilities import CAPABILITY_REGISTRY, parse_capability
from agent_conductor.capability_servers.common import open_storage, tool_error
from agent_conductor.errors import ConductorError, NotFoundError
from agent_conductor.storage.base import ConductorStorage

logger = logging.getLogger(__name__)

INSTRUCTIONS = """\
Inspect the agents and routines available to this user. list_routines shows
what can be dispatched; get_agent_config shows which capabilities an agent
runs with.
"""


def capability_catalogue() -> list[dict[str, Any]]:
    return [
        {
            "name": capability.value,
            "description": spec.description,
            "requires_connection": spec.service_name,
        }
        for capability, spec in CAPABILITY_REGISTRY.items()
    ]


class IntrospectionTools:
    def __init__(self, storage: ConductorStorage, *, user_id: int) -> None:
        self.storage = storage
        self.user_id = user_id

    async def list_agents(self, status: str | None = None) -> dict[str, Any]:
        agents = await self.storage.list_agents(user_id=self.user_id)
        if status is not None:
            agents = [agent for agent in agents if agent.status == status]
        return {
            "count": len(agents),
            "agents": [
                {
                    "id": agent.id,
                    "name": agent.name,
                    "role": agent.role,
                    "agent_type": agent.agent_type,
                    "status": agent.status,
                    "capabilities": list(agent.config.get("capabilities") or []),
                }
                for agent in agents
            ],
        }

    async def list_routines(self, status: str | None = "active") -> dict[str, Any]:
        routines = await self.storage.list_routines(user_id=self.user_id, status=status)
        return {
            "count": len(routines),
            "routines": [
                {
                    "id": routine.id,
                    "name": routine.name,
                    "description": routine.description,
                    "agent_id": routine.agent_id,
                    "frequency": routine.frequency,
                    "status": routine.status,
                    "last_run_at": routine.last_run_at,
                }
                for routine in routines
            ],
        }

    async def get_agent_config(self, agent_id: int) -> dict[str, Any]:
        agent = await self.storage.get_agent(agent_id)
        if agent is None or agent.user_id != self.user_id:
            raise NotFoundError("Agent", agent_id)
        names = list(agent.config.get("capabilities") or [])
        return {
            "agent": {"id": agent.id, "name": agent.name, "role": agent.role},
            "capabilities": [
                {
                    "name": name,
                    "known": parse_capability(name) is not None,
                }
                for name in names
            ],
            "max_turns": agent.config.get("max_turns"),
        }

    async def list_capabilities(self) -> dict[str, Any]:
        return {"capabilities": capability_catalogue()}


async def _call(coro: Any) -> str:
    try:
        payload = await coro
    except ConductorError as exc:
        return tool_error(exc)
    return json.dumps(payload, indent=2, default=str)


def create_server(tools: IntrospectionTools) -> FastMCP:
    mcp = FastMCP("capabilities", instructions=INSTRUCTIONS)

    @mcp.tool()
    async def list_agents(status: str | None = None) -> str:
        """List this user's agents with their roles and configured capabilities."""
        return await _call(tools.list_agents(status))

    @mcp.tool()
    async def list_routines(status: str | None = "active") -> str:
        """List routines that can be dispatched. Pass status=None for all of them."""
        return await _call(tools.list_routines(status))

    @mcp.tool()
    async def get_agent_config(agent_id: int) -> str:
        """Capabilities and turn budget of one agent."""
        return await _call(tools.get_agent_config(agent_id))

    @mcp.tool()
    async def list_capabilities() -> str:
        """Every capability an agent or routine may request."""
        return await _call(tools.list_capabilities())

    return mcp


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Capability introspection MCP server")
    parser.add_argument("--user-id", type=int, required=True)
    parser.add_argument("--agent-id", type=int, default=None)
    args = parser.parse_args(argv)

    storage = open_storage()
    logger.info("capability_server event=start name=capabilities user_id=%s", args.user_id)
    create_server(IntrospectionTools(storage, user_id=args.user_id)).run()


if __name__ == "__main__":
    main()
