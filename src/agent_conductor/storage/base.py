"""Storage interface for agents, routines, tasks and the execution ledger."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Protocol

from agent_conductor.storage.models import (
    AgentRecord,
    BrainDecisionRecord,
    DocumentStoreRecord,
    ExecutionLogRecord,
    ExecutionRecord,
    ReportRecord,
    RoutineRecord,
    ServiceConnectionRecord,
    TaskRecord,
)


class ConductorStorage(Protocol):
    async def migrate(self) -> None: ...

    async def create_agent(self, *, user_id: int, name: str, **fields: Any) -> AgentRecord: ...

    async def get_agent(self, agent_id: int) -> AgentRecord | None: ...

    async def list_agents(self, *, user_id: int | None = None) -> list[AgentRecord]: ...

    async def update_agent(self, agent_id: int, changes: dict[str, Any]) -> AgentRecord: ...

    async def increment_agent_counter(self, agent_id: int, counter: str) -> None: ...

    async def create_routine(
        self, *, user_id: int, agent_id: int, name: str, **fields: Any
    ) -> RoutineRecord: ...

    async def get_routine(self, routine_id: int) -> RoutineRecord | None: ...

    async def list_routines(
        self,
        *,
        user_id: int | None = None,
        agent_id: int | None = None,
        status: str | None = None,
    ) -> list[RoutineRecord]: ...

    async def update_routine(self, routine_id: int, changes: dict[str, Any]) -> RoutineRecord: ...

    async def create_task(self, *, user_id: int, title: str, **fields: Any) -> TaskRecord: ...

    async def get_task(self, task_id: int) -> TaskRecord | None: ...

    async def list_tasks(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        assigned_to_agent_id: int | None = None,
    ) -> list[TaskRecord]: ...

    async def update_task(self, task_id: int, changes: dict[str, Any]) -> TaskRecord: ...

    async def create_execution(
        self, *, user_id: int, trigger_type: str, **fields: Any
    ) -> ExecutionRecord: ...

    async def get_execution(self, execution_id: int) -> ExecutionRecord | None: ...

    async def update_execution(
        self, execution_id: int, changes: dict[str, Any]
    ) -> ExecutionRecord: ...

    async def list_executions(
        self,
        *,
        user_id: int,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]: ...

    async def append_execution_log(
        self,
        *,
        execution_id: int,
        level: str,
        message: str,
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionLogRecord: ...

    async def get_execution_logs_since(
        self, execution_id: int, last_log_id: int = 0
    ) -> list[ExecutionLogRecord]: ...

    async def create_brain_decision(
        self, *, user_id: int, action: str, reasoning: str, **fields: Any
    ) -> BrainDecisionRecord: ...

    async def update_brain_decision(
        self, decision_id: int, changes: dict[str, Any]
    ) -> BrainDecisionRecord: ...

    async def get_latest_brain_decision(self, user_id: int) -> BrainDecisionRecord | None: ...

    async def get_document_store(self, user_id: int) -> DocumentStoreRecord | None: ...

    async def save_document_store(self, record: DocumentStoreRecord) -> DocumentStoreRecord: ...

    async def list_document_store_users(self) -> list[int]: ...

    async def create_report(
        self,
        *,
        user_id: int,
        name: str,
        report_type: str,
        report_date: date,
        content: str,
        **fields: Any,
    ) -> ReportRecord: ...

    async def list_reports(
        self,
        *,
        user_id: int,
        report_type: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        report_date: date | None = None,
        limit: int | None = None,
    ) -> list[ReportRecord]: ...

    async def get_service_connection(
        self, user_id: int, service_name: str
    ) -> ServiceConnectionRecord | None: ...

    async def save_service_connection(
        self, record: ServiceConnectionRecord
    ) -> ServiceConnectionRecord: ...
