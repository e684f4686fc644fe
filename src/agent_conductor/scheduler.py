"""Timers that fire routine runs, Brain cycles and approved-task pickups."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable

from agent_conductor.brain.loop import BrainLoop
from agent_conductor.dispatch.common import DispatchServices
from agent_conductor.dispatch.routines import RoutineDispatcher
from agent_conductor.dispatch.tasks import TaskDispatcher
from agent_conductor.storage.models import TASK_PRIORITIES, RoutineRecord, TaskRecord

logger = logging.getLogger(__name__)

# critical first
PRIORITY_RANK = {priority: rank for rank, priority in enumerate(reversed(TASK_PRIORITIES))}


def routine_is_due(routine: RoutineRecord, now: datetime) -> bool:
    """Active scheduled routines run when never run or once ``next_run_at`` has passed.

    A failed run stamps ``last_run_at`` without moving ``next_run_at``, so a
    routine whose last run came at or after its slot stays idle until
    something dispatches it explicitly.
    """
    if routine.status != "active" or routine.frequency == "manual":
        return False
    if routine.next_run_at is None:
        return routine.last_run_at is None
    if routine.last_run_at is not None and routine.last_run_at >= routine.next_run_at:
        return False
    return routine.next_run_at <= now


def order_tasks(tasks: list[TaskRecord]) -> list[TaskRecord]:
    return sorted(
        tasks,
        key=lambda task: (PRIORITY_RANK.get(task.priority, len(PRIORITY_RANK)), task.created_at),
    )


class _BackgroundRunner:
    def __init__(self) -> None:
        self._pending: set[asyncio.Task[Any]] = set()

    def _spawn(self, awaitable: Awaitable[Any], *, label: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("scheduler event=run_failed label=%s error=%s", label, exc)

        task.add_done_callback(_done)
        return task

    async def wait_idle(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class Scheduler(_BackgroundRunner):
    def __init__(
        self,
        services: DispatchServices,
        *,
        routines: RoutineDispatcher | None = None,
        brain: BrainLoop | None = None,
    ) -> None:
        super().__init__()
        self.services = services
        self.routines = routines or RoutineDispatcher(services)
        self.brain = brain or BrainLoop(services, routines=self.routines)

    async def check_routines(self, now: datetime | None = None) -> list[int]:
        now = now or self.services.clock()
        started: list[int] = []
        for routine in await self.services.storage.list_routines(status="active"):
            if not routine_is_due(routine, now):
                continue
            if self.services.locks.is_busy(routine.agent_id):
                logger.info(
                    "scheduler event=skip_busy routine_id=%s agent_id=%s",
                    routine.id,
                    routine.agent_id,
                )
                continue
            self._spawn(
                self.routines.run_routine(
                    routine.id, user_id=routine.user_id, trigger_type="scheduled"
                ),
                label=f"routine:{routine.id}",
            )
            started.append(routine.id)
        if started:
            logger.info("scheduler event=routines_dispatched routine_ids=%s", started)
        return started

    async def brain_is_due(self, user_id: int, now: datetime) -> bool:
        if now.hour < self.services.settings.brain_hour:
            return False
        latest = await self.services.storage.get_latest_brain_decision(user_id)
        if latest is None:
            return True
        interval = timedelta(hours=self.services.settings.brain_interval_hours)
        return latest.created_at + interval <= now

    async def check_brain(self, now: datetime | None = None) -> list[int]:
        now = now or self.services.clock()
        started: list[int] = []
        for user_id in await self.services.storage.list_document_store_users():
            if await self.brain_is_due(user_id, now):
                self._spawn(self.brain.run_cycle(user_id), label=f"brain:{user_id}")
                started.append(user_id)
        return started

    async def run_forever(self) -> None:
        interval = self.services.settings.routine_check_interval_s
        logger.info("scheduler event=started interval_s=%s", interval)
        while True:
            try:
                await self.check_routines()
                await self.check_brain()
            except Exception as exc:  # noqa: BLE001
                logger.error("scheduler event=tick_failed error=%s", exc)
            await asyncio.sleep(interval)


class TaskAssignmentListener(_BackgroundRunner):
    """Poll for approved tasks and start each on its assigned agent."""

    def __init__(
        self, services: DispatchServices, *, tasks: TaskDispatcher | None = None
    ) -> None:
        super().__init__()
        self.services = services
        self.tasks = tasks or TaskDispatcher(services)
        self._executing: set[int] = set()

    async def _run(self, task: TaskRecord, agent_id: int) -> None:
        try:
            await self.tasks.run_task(task.id, agent_id, user_id=task.user_id)
        finally:
            self._executing.discard(agent_id)

    async def poll_once(self) -> list[tuple[int, int]]:
        storage = self.services.storage
        started: list[tuple[int, int]] = []
        candidates = [
            task
            for task in await storage.list_tasks(status="approved")
            if task.assigned_to_agent_id is not None
        ]
        for task in order_tasks(candidates):
            agent_id = task.assigned_to_agent_id
            if agent_id in self._executing or self.services.locks.is_busy(agent_id):
                continue
            agent = await storage.get_agent(agent_id)
            if agent is None or agent.status != "active" or agent.user_id != task.user_id:
                continue
            self._executing.add(agent_id)
            self._spawn(self._run(task, agent_id), label=f"task:{task.id}")
            started.append((task.id, agent_id))
            logger.info(
                "task_listener event=dispatched task_id=%s agent_id=%s priority=%s",
                task.id,
                agent_id,
                task.priority,
            )
        return started

    async def run_forever(self) -> None:
        interval = self.services.settings.task_poll_interval_s
        logger.info("task_listener event=started interval_s=%s", interval)
        while True:
            try:
                await self.poll_once()
            except Exception as exc:  # noqa: BLE001
                logger.error("task_listener event=poll_failed error=%s", exc)
            await asyncio.sleep(interval)
