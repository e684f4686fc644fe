"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

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

_JSON_COLUMNS = {"config", "metadata", "analytics_json", "credentials"}
_AGENT_COUNTERS = {"total_routine_runs", "total_task_completions"}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS agents (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT '',
        agent_type TEXT NOT NULL DEFAULT 'general',
        status TEXT NOT NULL DEFAULT 'active',
        config JSONB NOT NULL DEFAULT '{}'::jsonb,
        session_id TEXT,
        workspace_path TEXT,
        total_routine_runs INTEGER NOT NULL DEFAULT 0,
        total_task_completions INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS routines (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        agent_id BIGINT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL DEFAULT 'general',
        frequency TEXT NOT NULL DEFAULT 'manual',
        status TEXT NOT NULL DEFAULT 'active',
        config JSONB NOT NULL DEFAULT '{}'::jsonb,
        last_run_at TIMESTAMPTZ,
        next_run_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        priority TEXT NOT NULL DEFAULT 'medium',
        status TEXT NOT NULL DEFAULT 'suggested',
        suggestion_reasoning TEXT,
        approval_reasoning TEXT,
        completion_summary TEXT,
        rejection_reasoning TEXT,
        blocked_reason TEXT,
        approved_by TEXT,
        approved_at TIMESTAMPTZ,
        started_at TIMESTAMPTZ,
        blocked_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        last_status_change_at TIMESTAMPTZ,
        last_status_change_by TEXT,
        proposed_by_agent_id BIGINT,
        assigned_to_agent_id BIGINT,
        assigned_to_module_id BIGINT,
        brain_decision_id BIGINT,
        execution_id BIGINT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assigned_agent ON tasks(assigned_to_agent_id)",
    """
    CREATE TABLE IF NOT EXISTS executions (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        routine_id BIGINT,
        task_id BIGINT,
        agent_id BIGINT,
        trigger_type TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        duration_ms INTEGER,
        cost_usd DOUBLE PRECISION,
        output TEXT,
        error_message TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_user_started ON executions(user_id, started_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS execution_logs (
        id BIGSERIAL PRIMARY KEY,
        execution_id BIGINT NOT NULL REFERENCES executions(id) ON DELETE CASCADE,
        level TEXT NOT NULL,
        stage TEXT,
        message TEXT NOT NULL,
        metadata JSONB,
        timestamp TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_execution_logs_execution ON execution_logs(execution_id, id)",
    """
    CREATE TABLE IF NOT EXISTS brain_decisions (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        action TEXT NOT NULL,
        reasoning TEXT NOT NULL,
        routine_id BIGINT,
        agent_id BIGINT,
        task_id BIGINT,
        priority TEXT NOT NULL DEFAULT 'medium',
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        execution_id BIGINT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document_stores (
        user_id BIGINT PRIMARY KEY,
        vision_md TEXT NOT NULL DEFAULT '',
        goals_md TEXT NOT NULL DEFAULT '',
        analytics_md TEXT NOT NULL DEFAULT '',
        analytics_json JSONB NOT NULL DEFAULT '{}'::jsonb,
        memory_md TEXT NOT NULL DEFAULT '',
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_connections (
        user_id BIGINT NOT NULL,
        service_name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'connected',
        credentials JSONB NOT NULL DEFAULT '{}'::jsonb,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        PRIMARY KEY (user_id, service_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reports (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        execution_id BIGINT,
        module_id BIGINT,
        name TEXT NOT NULL,
        report_type TEXT NOT NULL,
        report_date DATE NOT NULL,
        content TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reports_user_date ON reports(user_id, report_date DESC)",
    "CREATE INDEX IF NOT EXISTS idx_reports_user_type ON reports(user_id, report_type)",
)


class PostgresStorage:
    """Persist orchestration state in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("AGENT_CONDUCTOR_DATABASE_URL is required")
        self.database_url = database_url
        self._psycopg, self._sql, self._dict_row, self._json_wrapper = self._load_psycopg()

    async def migrate(self) -> None:
        async with await self._connect() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()

    async def create_agent(self, *, user_id: int, name: str, **fields: Any) -> AgentRecord:
        now = datetime.now(tz=UTC)
        row = await self._insert(
            "agents",
            AgentRecord,
            {"user_id": user_id, "name": name, "created_at": now, "updated_at": now, **fields},
        )
        return AgentRecord.model_validate(row)

    async def get_agent(self, agent_id: int) -> AgentRecord | None:
        row = await self._fetch_one("SELECT * FROM agents WHERE id = %s", (agent_id,))
        return AgentRecord.model_validate(row) if row else None

    async def list_agents(self, *, user_id: int | None = None) -> list[AgentRecord]:
        if user_id is None:
            rows = await self._fetch_all("SELECT * FROM agents ORDER BY id", ())
        else:
            rows = await self._fetch_all(
                "SELECT * FROM agents WHERE user_id = %s ORDER BY id", (user_id,)
            )
        return [AgentRecord.model_validate(row) for row in rows]

    async def update_agent(self, agent_id: int, changes: dict[str, Any]) -> AgentRecord:
        row = await self._update("agents", AgentRecord, agent_id, changes)
        return AgentRecord.model_validate(row)

    async def increment_agent_counter(self, agent_id: int, counter: str) -> None:
        if counter not in _AGENT_COUNTERS:
            raise ValueError(f"Unknown agent counter: {counter}")
        query = self._sql.SQL(
            "UPDATE agents SET {col} = {col} + 1, updated_at = %s WHERE id = %s"
        ).format(col=self._sql.Identifier(counter))
        async with await self._connect() as conn:
            await conn.execute(query, (datetime.now(tz=UTC), agent_id))
            await conn.commit()

    async def create_routine(
        self, *, user_id: int, agent_id: int, name: str, **fields: Any
    ) -> RoutineRecord:
        now = datetime.now(tz=UTC)
        row = await self._insert(
            "routines",
            RoutineRecord,
            {
                "user_id": user_id,
                "agent_id": agent_id,
                "name": name,
                "created_at": now,
                "updated_at": now,
                **fields,
            },
        )
        return RoutineRecord.model_validate(row)

    async def get_routine(self, routine_id: int) -> RoutineRecord | None:
        row = await self._fetch_one("SELECT * FROM routines WHERE id = %s", (routine_id,))
        return RoutineRecord.model_validate(row) if row else None

    async def list_routines(
        self,
        *,
        user_id: int | None = None,
        agent_id: int | None = None,
        status: str | None = None,
    ) -> list[RoutineRecord]:
        rows = await self._select_where(
            "routines",
            {"user_id": user_id, "agent_id": agent_id, "status": status},
            order_by="id",
        )
        return [RoutineRecord.model_validate(row) for row in rows]

    async def update_routine(self, routine_id: int, changes: dict[str, Any]) -> RoutineRecord:
        row = await self._update("routines", RoutineRecord, routine_id, changes)
        return RoutineRecord.model_validate(row)

    async def create_task(self, *, user_id: int, title: str, **fields: Any) -> TaskRecord:
        now = datetime.now(tz=UTC)
        row = await self._insert(
            "tasks",
            TaskRecord,
            {"user_id": user_id, "title": title, "created_at": now, "updated_at": now, **fields},
        )
        return TaskRecord.model_validate(row)

    async def get_task(self, task_id: int) -> TaskRecord | None:
        row = await self._fetch_one("SELECT * FROM tasks WHERE id = %s", (task_id,))
        return TaskRecord.model_validate(row) if row else None

    async def list_tasks(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        assigned_to_agent_id: int | None = None,
    ) -> list[TaskRecord]:
        rows = await self._select_where(
            "tasks",
            {"user_id": user_id, "status": status, "assigned_to_agent_id": assigned_to_agent_id},
            order_by="created_at",
        )
        return [TaskRecord.model_validate(row) for row in rows]

    async def update_task(self, task_id: int, changes: dict[str, Any]) -> TaskRecord:
        row = await self._update("tasks", TaskRecord, task_id, changes)
        return TaskRecord.model_validate(row)

    async def create_execution(
        self, *, user_id: int, trigger_type: str, **fields: Any
    ) -> ExecutionRecord:
        fields.setdefault("status", "running")
        row = await self._insert(
            "executions",
            ExecutionRecord,
            {
                "user_id": user_id,
                "trigger_type": trigger_type,
                "started_at": datetime.now(tz=UTC),
                **fields,
            },
        )
        return ExecutionRecord.model_validate(row)

    async def get_execution(self, execution_id: int) -> ExecutionRecord | None:
        row = await self._fetch_one("SELECT * FROM executions WHERE id = %s", (execution_id,))
        return ExecutionRecord.model_validate(row) if row else None

    async def update_execution(
        self, execution_id: int, changes: dict[str, Any]
    ) -> ExecutionRecord:
        row = await self._update("executions", ExecutionRecord, execution_id, changes)
        return ExecutionRecord.model_validate(row)

    async def list_executions(
        self,
        *,
        user_id: int,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        query = "SELECT * FROM executions WHERE user_id = %s"
        params: list[Any] = [user_id]
        if since is not None:
            query += " AND started_at >= %s"
            params.append(since)
        query += " ORDER BY started_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        rows = await self._fetch_all(query, tuple(params))
        return [ExecutionRecord.model_validate(row) for row in rows]

    async def append_execution_log(
        self,
        *,
        execution_id: int,
        level: str,
        message: str,
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionLogRecord:
        row = await self._insert(
            "execution_logs",
            ExecutionLogRecord,
            {
                "execution_id": execution_id,
                "level": level,
                "stage": stage,
                "message": message,
                "metadata": metadata,
                "timestamp": datetime.now(tz=UTC),
            },
        )
        return ExecutionLogRecord.model_validate(row)

    async def get_execution_logs_since(
        self, execution_id: int, last_log_id: int = 0
    ) -> list[ExecutionLogRecord]:
        rows = await self._fetch_all(
            """
            SELECT *
            FROM execution_logs
            WHERE execution_id = %s AND id > %s
            ORDER BY id ASC
            """,
            (execution_id, last_log_id),
        )
        return [ExecutionLogRecord.model_validate(row) for row in rows]

    async def create_brain_decision(
        self, *, user_id: int, action: str, reasoning: str, **fields: Any
    ) -> BrainDecisionRecord:
        row = await self._insert(
            "brain_decisions",
            BrainDecisionRecord,
            {
                "user_id": user_id,
                "action": action,
                "reasoning": reasoning,
                "created_at": datetime.now(tz=UTC),
                **fields,
            },
        )
        return BrainDecisionRecord.model_validate(row)

    async def update_brain_decision(
        self, decision_id: int, changes: dict[str, Any]
    ) -> BrainDecisionRecord:
        row = await self._update("brain_decisions", BrainDecisionRecord, decision_id, changes)
        return BrainDecisionRecord.model_validate(row)

    async def get_latest_brain_decision(self, user_id: int) -> BrainDecisionRecord | None:
        row = await self._fetch_one(
            """
            SELECT *
            FROM brain_decisions
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (user_id,),
        )
        return BrainDecisionRecord.model_validate(row) if row else None

    async def get_document_store(self, user_id: int) -> DocumentStoreRecord | None:
        row = await self._fetch_one(
            "SELECT * FROM document_stores WHERE user_id = %s", (user_id,)
        )
        return DocumentStoreRecord.model_validate(row) if row else None

    async def save_document_store(self, record: DocumentStoreRecord) -> DocumentStoreRecord:
        async with await self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO document_stores (
                    user_id, vision_md, goals_md, analytics_md, analytics_json, memory_md, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET vision_md = EXCLUDED.vision_md,
                    goals_md = EXCLUDED.goals_md,
                    analytics_md = EXCLUDED.analytics_md,
                    analytics_json = EXCLUDED.analytics_json,
                    memory_md = EXCLUDED.memory_md,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    record.user_id,
                    record.vision_md,
                    record.goals_md,
                    record.analytics_md,
                    self._json_wrapper(record.analytics_json),
                    record.memory_md,
                    datetime.now(tz=UTC),
                ),
            )
            row = await cursor.fetchone()
            await conn.commit()
        return DocumentStoreRecord.model_validate(row)

    async def list_document_store_users(self) -> list[int]:
        rows = await self._fetch_all("SELECT user_id FROM document_stores ORDER BY user_id", ())
        return [int(row["user_id"]) for row in rows]

    async def get_service_connection(
        self, user_id: int, service_name: str
    ) -> ServiceConnectionRecord | None:
        row = await self._fetch_one(
            "SELECT * FROM service_connections WHERE user_id = %s AND service_name = %s",
            (user_id, service_name),
        )
        return ServiceConnectionRecord.model_validate(row) if row else None

    async def save_service_connection(
        self, record: ServiceConnectionRecord
    ) -> ServiceConnectionRecord:
        payload = record.model_dump(mode="json")
        async with await self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO service_connections (user_id, service_name, status, credentials, metadata)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, service_name) DO UPDATE
                SET status = EXCLUDED.status,
                    credentials = EXCLUDED.credentials,
                    metadata = EXCLUDED.metadata
                """,
                (
                    record.user_id,
                    record.service_name,
                    record.status,
                    self._json_wrapper(payload["credentials"]),
                    self._json_wrapper(payload["metadata"]),
                ),
            )
            await conn.commit()
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
        row = await self._insert(
            "reports",
            ReportRecord,
            {
                "user_id": user_id,
                "name": name,
                "report_type": report_type,
                "report_date": report_date,
                "content": content,
                "created_at": datetime.now(tz=UTC),
                **fields,
            },
        )
        return ReportRecord.model_validate(row)

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
        query = "SELECT * FROM reports WHERE user_id = %s"
        params: list[Any] = [user_id]
        if report_type is not None:
            query += " AND report_type = %s"
            params.append(report_type)
        if start_date is not None:
            query += " AND report_date >= %s"
            params.append(start_date)
        if end_date is not None:
            query += " AND report_date <= %s"
            params.append(end_date)
        if report_date is not None:
            query += " AND report_date = %s"
            params.append(report_date)
        query += " ORDER BY report_date DESC, created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        rows = await self._fetch_all(query, tuple(params))
        return [ReportRecord.model_validate(row) for row in rows]

    async def _connect(self):
        return await self._psycopg.AsyncConnection.connect(
            self.database_url, row_factory=self._dict_row
        )

    def _adapt(self, column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS and value is not None:
            return self._json_wrapper(value)
        return value

    async def _insert(
        self, table: str, model: type[BaseModel], values: dict[str, Any]
    ) -> dict[str, Any]:
        _check_columns(model, values)
        columns = list(values)
        query = self._sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values}) RETURNING *").format(
            table=self._sql.Identifier(table),
            columns=self._sql.SQL(", ").join(self._sql.Identifier(col) for col in columns),
            values=self._sql.SQL(", ").join(self._sql.Placeholder() for _ in columns),
        )
        params = tuple(self._adapt(col, values[col]) for col in columns)
        async with await self._connect() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RuntimeError(f"Failed to insert into {table}")
        return row

    async def _update(
        self, table: str, model: type[BaseModel], record_id: int, changes: dict[str, Any]
    ) -> dict[str, Any]:
        _check_columns(model, changes)
        values = dict(changes)
        if "updated_at" in model.model_fields:
            values["updated_at"] = datetime.now(tz=UTC)
        if not values:
            row = await self._fetch_one(
                self._sql.SQL("SELECT * FROM {table} WHERE id = %s").format(
                    table=self._sql.Identifier(table)
                ),
                (record_id,),
            )
        else:
            query = self._sql.SQL("UPDATE {table} SET {assignments} WHERE id = %s RETURNING *").format(
                table=self._sql.Identifier(table),
                assignments=self._sql.SQL(", ").join(
                    self._sql.SQL("{} = %s").format(self._sql.Identifier(col)) for col in values
                ),
            )
            params = (*(self._adapt(col, value) for col, value in values.items()), record_id)
            async with await self._connect() as conn:
                cursor = await conn.execute(query, params)
                row = await cursor.fetchone()
                await conn.commit()
        if row is None:
            raise KeyError(f"{table} row {record_id} does not exist")
        return row

    async def _select_where(
        self, table: str, filters: dict[str, Any], *, order_by: str
    ) -> list[dict[str, Any]]:
        active = {col: value for col, value in filters.items() if value is not None}
        query = self._sql.SQL("SELECT * FROM {table}").format(table=self._sql.Identifier(table))
        if active:
            query += self._sql.SQL(" WHERE ") + self._sql.SQL(" AND ").join(
                self._sql.SQL("{} = %s").format(self._sql.Identifier(col)) for col in active
            )
        query += self._sql.SQL(" ORDER BY {}").format(self._sql.Identifier(order_by))
        return await self._fetch_all(query, tuple(active.values()))

    async def _fetch_one(self, query: Any, params: tuple[Any, ...]) -> dict[str, Any] | None:
        async with await self._connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def _fetch_all(self, query: Any, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        async with await self._connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    @staticmethod
    def _load_psycopg():
        try:
            import psycopg
            from psycopg import sql
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "psycopg is required for PostgreSQL storage. Install with `pip install psycopg[binary]`."
            ) from exc
        return psycopg, sql, dict_row, Json


def _check_columns(model: type[BaseModel], values: dict[str, Any]) -> None:
    unknown = set(values) - set(model.model_fields)
    if unknown:
        raise ValueError(f"Unknown fields for {model.__name__}: {sorted(unknown)}")
