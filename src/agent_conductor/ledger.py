"""Execution ledger: execution rows, append-only progress logs and live fan-out."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Awaitable, TypeVar

from agent_conductor.errors import LedgerError, NotFoundError
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import ExecutionLogRecord, ExecutionRecord
from agent_conductor.streaming import LogBroadcaster, StreamEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "failed"})


async def best_effort(awaitable: Awaitable[T], *, what: str) -> T | None:
    """Await a side-channel write; log and swallow its failure."""
    try:
        return await awaitable
    except Exception as exc:  # noqa: BLE001
        logger.warning("best_effort event=failed what=%s error=%s", what, exc)
        return None


class ExecutionLedger:
    def __init__(
        self, storage: ConductorStorage, *, broadcaster: LogBroadcaster | None = None
    ) -> None:
        self.storage = storage
        self.broadcaster = broadcaster

    async def start_execution(
        self,
        *,
        user_id: int,
        trigger_type: str,
        routine_id: int | None = None,
        task_id: int | None = None,
        agent_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        execution = await self.storage.create_execution(
            user_id=user_id,
            trigger_type=trigger_type,
            routine_id=routine_id,
            task_id=task_id,
            agent_id=agent_id,
            status="running",
            metadata=metadata or {},
        )
        logger.info(
            "execution event=start execution_id=%s trigger=%s routine_id=%s task_id=%s",
            execution.id,
            trigger_type,
            routine_id,
            task_id,
        )
        return execution

    async def finish_execution(
        self,
        execution_id: int,
        *,
        success: bool,
        output: str | None = None,
        error_message: str | None = None,
        cost_usd: float | None = None,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        """Move an execution to its terminal state. Allowed exactly once."""
        current = await self.storage.get_execution(execution_id)
        if current is None:
            raise NotFoundError("Execution", execution_id)
        if current.status in TERMINAL_EXECUTION_STATUSES:
            raise LedgerError(f"Execution {execution_id} already finalised as {current.status}")

        completed_at = datetime.now(tz=UTC)
        if duration_ms is None:
            duration_ms = int((completed_at - current.started_at).total_seconds() * 1000)
        changes: dict[str, Any] = {
            "status": "completed" if success else "failed",
            "completed_at": completed_at,
            "duration_ms": duration_ms,
            "cost_usd": cost_usd,
            "output": output,
            "error_message": error_message,
        }
        if metadata:
            changes["metadata"] = {**current.metadata, **metadata}
        finished = await self.storage.update_execution(execution_id, changes)
        logger.info(
            "execution event=finish execution_id=%s status=%s duration_ms=%s cost_usd=%s",
            execution_id,
            finished.status,
            duration_ms,
            cost_usd,
        )
        if self.broadcaster is not None:
            self.broadcaster.publish(
                StreamEvent(
                    kind="complete",
                    execution_id=execution_id,
                    user_id=finished.user_id,
                    payload={
                        "status": finished.status,
                        "error_message": error_message,
                        "duration_ms": duration_ms,
                        "cost_usd": cost_usd,
                    },
                )
            )
        return finished

    async def append_log(
        self,
        execution_id: int,
        message: str,
        *,
        level: str = "info",
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
        user_id: int | None = None,
    ) -> ExecutionLogRecord:
        record = await self.storage.append_execution_log(
            execution_id=execution_id,
            level=level,
            stage=stage,
            message=message,
            metadata=metadata,
        )
        if self.broadcaster is not None:
            self.broadcaster.publish(
                StreamEvent(
                    kind="log",
                    execution_id=execution_id,
                    user_id=user_id,
                    payload=record.model_dump(mode="json"),
                )
            )
        return record

    async def log(
        self,
        execution_id: int,
        message: str,
        *,
        level: str = "info",
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
        user_id: int | None = None,
    ) -> ExecutionLogRecord | None:
        """Best-effort variant of append_log for progress and setup messages."""
        return await best_effort(
            self.append_log(
                execution_id,
                message,
                level=level,
                stage=stage,
                metadata=metadata,
                user_id=user_id,
            ),
            what=f"execution_log:{execution_id}",
        )

    async def get_execution(self, execution_id: int) -> ExecutionRecord | None:
        return await self.storage.get_execution(execution_id)

    async def get_logs_since(
        self, execution_id: int, last_log_id: int = 0
    ) -> list[ExecutionLogRecord]:
        return await self.storage.get_execution_logs_since(execution_id, last_log_id)
