"""In-memory storage backend for tests only."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any, TypeVar

from pydantic import BaseModel

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

RecordT = TypeVar("RecordT", bound=BaseModel)

_AGENT_COUNTERS = {"total_routine_runs", "total_task_completions"}


def _apply(record: RecordT, changes: dict[str, Any]) -> RecordT:
    unknown = set(changes) - set(type(record).model_fields)
    if unknown:
        raise ValueError(f"Unknown fields for {type(record).__name__}: {sorted(unknown)}")
    payload = record.model_dump()
    payload.update(changes)
    if "updated_at" in payload:
        payload["updated_at"] = datetime.now(tz=UTC)
    return type(record).model_validate(payload)


class InMemoryStorage:
    """Simple in-memory implementation for unit tests."""

    def __init__(self) -> None:
        self._agents: dict[int, AgentRecord] = {}
        self._routines: dict[int, RoutineRecord] = {}
        self._tasks: dict[int, TaskRecord] = {}
        self._executions: dict[int, ExecutionRecord] = {}
        self._logs: list[ExecutionLogRecord] = []
        self._decisions: dict[int, BrainDecisionRecord] = {}
        self._documents: dict[int, DocumentStoreRecord] = {}
        self._connections: dict[tuple[int, str], ServiceConnectionRecord] = {}
        self._reports: dict[int, ReportRecord] = {}
        self._sequences: dict[str, int] = {}

    def _next_id(self, kind: str) -> int:
        self._sequences[kind] = self._sequences.get(kind, 0) + 1
        return self._sequences[kind]

    async def migrate(self) -> None:
        return None

    async def create_agent(self, *, user_id: int, name: str, **fields: Any) -> AgentRecord:
        now = datetime.now(tz=UTC)
        record = AgentRecord(
            id=self._next_id("agent"),
            user_id=user_id,
            name=name,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._agents[record.id] = record
        return record.model_copy(deep=True)

    async def get_agent(self, agent_id: int) -> AgentRecord | None:
        record = self._agents.get(agent_id)
        return record.model_copy(deep=True) if record else None

    async def list_agents(self, *, user_id: int | None = None) -> list[AgentRecord]:
        return [
            agent.model_copy(deep=True)
            for agent in self._agents.values()
            if user_id is None or agent.user_id == user_id
        ]

    async def update_agent(self, agent_id: int, changes: dict[str, Any]) -> AgentRecord:
        current = self._agents.get(agent_id)
        if current is None:
            raise KeyError(f"Agent {agent_id} does not exist")
        self._agents[agent_id] = _apply(current, changes)
        return self._agents[agent_id].model_copy(deep=True)

    async def increment_agent_counter(self, agent_id: int, counter: str) -> None:
        if counter not in _AGENT_COUNTERS:
            raise ValueError(f"Unknown agent counter: {counter}")
        current = self._agents.get(agent_id)
        if current is None:
            raise KeyError(f"Agent {agent_id} does not exist")
        self._agents[agent_id] = _apply(current, {counter: getattr(current, counter) + 1})

    async def create_routine(
        self, *, user_id: int, agent_id: int, name: str, **fields: Any
    ) -> RoutineRecord:
        now = datetime.now(tz=UTC)
        record = RoutineRecord(
            id=self._next_id("routine"),
            user_id=user_id,
            agent_id=agent_id,
            name=name,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._routines[record.id] = record
        return record.model_copy(deep=True)

    async def get_routine(self, routine_id: int) -> RoutineRecord | None:
        record = self._routines.get(routine_id)
        return record.model_copy(deep=True) if record else None

    async def list_routines(
        self,
        *,
        user_id: int | None = None,
        agent_id: int | None = None,
        status: str | None = None,
    ) -> list[RoutineRecord]:
        return [
            routine.model_copy(deep=True)
            for routine in self._routines.values()
            if (user_id is None or routine.user_id == user_id)
            and (agent_id is None or routine.agent_id == agent_id)
            and (status is None or routine.status == status)
        ]

    async def update_routine(self, routine_id: int, changes: dict[str, Any]) -> RoutineRecord:
        current = self._routines.get(routine_id)
        if current is None:
            raise KeyError(f"Routine {routine_id} does not exist")
        self._routines[routine_id] = _apply(current, changes)
        return self._routines[routine_id].model_copy(deep=True)

    async def create_task(self, *, user_id: int, title: str, **fields: Any) -> TaskRecord:
        now = datetime.now(tz=UTC)
        record = TaskRecord(
            id=self._next_id("task"),
            user_id=user_id,
            title=title,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._tasks[record.id] = record
        return record.model_copy(deep=True)

    async def get_task(self, task_id: int) -> TaskRecord | None:
        record = self._tasks.get(task_id)
        return record.model_copy(deep=True) if record else None

    async def list_tasks(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        assigned_to_agent_id: int | None = None,
    ) -> list[TaskRecord]:
        return [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if (user_id is None or task.user_id == user_id)
            and (status is None or task.status == status)
            and (assigned_to_agent_id is None or task.assigned_to_agent_id == assigned_to_agent_id)
        ]

    async def update_task(self, task_id: int, changes: dict[str, Any]) -> TaskRecord:
        current = self._tasks.get(task_id)
        if current is None:
            raise KeyError(f"Task {task_id} does not exist")
        self._tasks[task_id] = _apply(current, changes)
        return self._tasks[task_id].model_copy(deep=True)

    async def create_execution(
        self, *, user_id: int, trigger_type: str, **fields: Any
    ) -> ExecutionRecord:
        record = ExecutionRecord(
            id=self._next_id("execution"),
            user_id=user_id,
            trigger_type=trigger_type,
            started_at=datetime.now(tz=UTC),
            **fields,
        )
        self._executions[record.id] = record
        return record.model_copy(deep=True)

    async def get_execution(self, execution_id: int) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def update_execution(
        self, execution_id: int, changes: dict[str, Any]
    ) -> ExecutionRecord:
        current = self._executions.get(execution_id)
        if current is None:
            raise KeyError(f"Execution {execution_id} does not exist")
        self._executions[execution_id] = _apply(current, changes)
        return self._executions[execution_id].model_copy(deep=True)

    async def list_executions(
        self,
        *,
        user_id: int,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        items = sorted(
            (
                execution
                for execution in self._executions.values()
                if execution.user_id == user_id
                and (since is None or execution.started_at >= since)
            ),
            key=lambda execution: (execution.started_at, execution.id),
            reverse=True,
        )
        if limit is not None:
            items = items[:limit]
        return [execution.model_copy(deep=True) for execution in items]

    async def append_execution_log(
        self,
        *,
        execution_id: int,
        level: str,
        message: str,
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionLogRecord:
        record = ExecutionLogRecord(
            id=self._next_id("log"),
            execution_id=execution_id,
            level=level,
            stage=stage,
            message=message,
            metadata=metadata,
            timestamp=datetime.now(tz=UTC),
        )
        self._logs.append(record)
        return record.model_copy(deep=True)

    async def get_execution_logs_since(
        self, execution_id: int, last_log_id: int = 0
    ) -> list[ExecutionLogRecord]:
        return [
            log.model_copy(deep=True)
            for log in sorted(self._logs, key=lambda item: item.id)
            if log.execution_id == execution_id and log.id > last_log_id
        ]

    async def create_brain_decision(
        self, *, user_id: int, action: str, reasoning: str, **fields: Any
    ) -> BrainDecisionRecord:
        record = BrainDecisionRecord(
            id=self._next_id("decision"),
            user_id=user_id,
            action=action,
            reasoning=reasoning,
            created_at=datetime.now(tz=UTC),
            **fields,
        )
        self._decisions[record.id] = record
        return record.model_copy(deep=True)

    async def update_brain_decision(
        self, decision_id: int, changes: dict[str, Any]
    ) -> BrainDecisionRecord:
        current = self._decisions.get(decision_id)
        if current is None:
            raise KeyError(f"Brain decision {decision_id} does not exist")
        self._decisions[decision_id] = _apply(current, changes)
        return self._decisions[decision_id].model_copy(deep=True)

    async def get_latest_brain_decision(self, user_id: int) -> BrainDecisionRecord | None:
        decisions = [item for item in self._decisions.values() if item.user_id == user_id]
        if not decisions:
            return None
        latest = max(decisions, key=lambda item: (item.created_at, item.id))
        return latest.model_copy(deep=True)

    async def get_document_store(self, user_id: int) -> DocumentStoreRecord | None:
        record = self._documents.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def save_document_store(self, record: DocumentStoreRecord) -> DocumentStoreRecord:
        stored = record.model_copy(deep=True, update={"updated_at": datetime.now(tz=UTC)})
        self._documents[record.user_id] = stored
        return stored.model_copy(deep=True)

    async def list_document_store_users(self) -> list[int]:
        return sorted(self._documents)

    async def get_service_connection(
        self, user_id: int, service_name: str
    ) -> ServiceConnectionRecord | None:
        record = self._connections.get((user_id, service_name))
        return record.model_copy(deep=True) if record else None

    async def save_service_connection(
        self, record: ServiceConnectionRecord
    ) -> ServiceConnectionRecord:
        self._connections[(record.user_id, record.service_name)] = record.model_copy(deep=True)
        return record

    async def create_report(
        self,
        *,
        user_id: int,
        name: str,
        report_type: str,
        report_date: date,
        content: str,
        **fields: Any,
    ) -> ReportRecord:
        record = ReportRecord(
            id=self._next_id("report"),
            user_id=user_id,
            name=name,
            report_type=report_type,
            report_date=report_date,
            content=content,
            created_at=datetime.now(tz=UTC),
            **fields,
        )
        self._reports[record.id] = record
        return record.model_copy(deep=True)

    async def list_reports(
        self,
        *,
        user_id: int,
        report_type: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        report_date: date | None = None,
        limit: int | None = None,
    ) -> list[ReportRecord]:
        reports = [
            report
            for report in self._reports.values()
            if report.user_id == user_id
            and (report_type is None or report.report_type == report_type)
            and (start_date is None or report.report_date >= start_date)
            and (end_date is None or report.report_date <= end_date)
            and (report_date is None or report.report_date == report_date)
        ]
        reports.sort(key=lambda item: (item.report_date, item.created_at, item.id), reverse=True)
        if limit is not None:
            reports = reports[:limit]
        return [report.model_copy(deep=True) for report in reports]
