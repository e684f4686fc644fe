from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict

from agent_conductor.brain.loop import BrainLoop
from agent_conductor.config.settings import Settings, get_settings
from agent_conductor.dispatch.common import DispatchServices
from agent_conductor.dispatch.routines import RoutineDispatcher
from agent_conductor.dispatch.tasks import TaskDispatcher
from agent_conductor.runtime import build_engine, build_services, build_storage
from agent_conductor.scheduler import Scheduler, TaskAssignmentListener

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agent-conductor",
        description="Run the agent orchestration services.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    commands.add_parser("migrate", help="Create or update database tables.")
    commands.add_parser(
        "scheduler", help="Run the routine/Brain scheduler and the task assignment listener."
    )

    brain = commands.add_parser("brain", help="Run one Brain cycle for a user.")
    brain.add_argument("--user-id", type=int, required=True)

    routine = commands.add_parser("run-routine", help="Dispatch one routine now.")
    routine.add_argument("routine_id", type=int)
    routine.add_argument("--user-id", type=int, required=True)
    routine.add_argument(
        "--params",
        type=json.loads,
        default=None,
        help="JSON object merged into the routine config for this run.",
    )

    task = commands.add_parser("run-task", help="Run one approved task on an agent.")
    task.add_argument("task_id", type=int)
    task.add_argument("--agent-id", type=int, required=True)
    task.add_argument("--user-id", type=int, required=True)
    return parser.parse_args(argv)


async def _services(settings: Settings) -> DispatchServices:
    storage = build_storage(settings)
    await storage.migrate()
    return build_services(storage, settings=settings, engine=build_engine(settings))


async def _migrate(settings: Settings) -> None:
    await build_storage(settings).migrate()
    logger.info("cli event=migrated")


async def _scheduler(settings: Settings) -> None:
    services = await _services(settings)
    routines = RoutineDispatcher(services)
    scheduler = Scheduler(services, routines=routines)
    listener = TaskAssignmentListener(services)
    await asyncio.gather(scheduler.run_forever(), listener.run_forever())


async def _brain(settings: Settings, user_id: int) -> dict:
    services = await _services(settings)
    result = await BrainLoop(services).run_cycle(user_id)
    return asdict(result)


async def _run_routine(settings: Settings, args: argparse.Namespace) -> dict:
    services = await _services(settings)
    result = await RoutineDispatcher(services).run_routine(
        args.routine_id, user_id=args.user_id, trigger_type="manual", params=args.params
    )
    return asdict(result)


async def _run_task(settings: Settings, args: argparse.Namespace) -> dict:
    services = await _services(settings)
    result = await TaskDispatcher(services).run_task(
        args.task_id, args.agent_id, user_id=args.user_id
    )
    return asdict(result)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("agent_conductor.api.main:app", host=args.host, port=args.port)
        return
    if args.command == "migrate":
        asyncio.run(_migrate(settings))
        return
    if args.command == "scheduler":
        asyncio.run(_scheduler(settings))
        return

    if args.command == "brain":
        payload = asyncio.run(_brain(settings, args.user_id))
    elif args.command == "run-routine":
        payload = asyncio.run(_run_routine(settings, args))
    else:
        payload = asyncio.run(_run_task(settings, args))
    print(json.dumps(payload, indent=2, default=str))


if __name__ == "__main__":
    main()
