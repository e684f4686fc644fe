"""FastAPI app entrypoint for agent-conductor."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Literal

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from agent_conductor.brain.loop import BrainLoop
from agent_conductor.config.settings import Settings, get_settings
from agent_conductor.dispatch.common import Clock, DispatchServices, utc_now
from agent_conductor.dispatch.routines import RoutineDispatcher
from agent_conductor.dispatch.tasks import TaskDispatcher
from agent_conductor.engine.base import ExecutionEngine
from agent_conductor.errors import NotFoundError, PreconditionError
from agent_conductor.ledger import TERMINAL_EXECUTION_STATUSES
from agent_conductor.runtime import build_engine, build_services, build_storage
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import (
    BrainDecisionRecord,
    DocumentStoreRecord,
    ExecutionLogRecord,
    ExecutionRecord,
    TaskPriority,
    TaskRecord,
    TaskStatus,
)
from agent_conductor.streaming import LogBroadcaster

STREAM_HEARTBEAT_S = 15.0


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    suggestion_reasoning: str | None = None
    priority: TaskPriority = "medium"
    assigned_to_agent_id: int | None = None
    assigned_to_module_id: int | None = None


class UpdateTaskStatusRequest(BaseModel):
    status: TaskStatus
    changed_by: str = "user"
    approval_reasoning: str | None = None
    rejection_reasoning: str | None = None
    completion_summary: str | None = None
    blocked_reason: str | None = None
    assigned_to_agent_id: int | None = None
    assigned_to_module_id: int | None = None


class ReviewTaskRequest(BaseModel):
    reasoning: str | None = None
    reviewed_by: str = "user"
    assigned_to_agent_id: int | None = None
    assigned_to_module_id: int | None = None


class RunTaskRequest(BaseModel):
    agent_id: int | None = None


class RunRoutineRequest(BaseModel):
    params: dict[str, Any] | None = None


class UpdateDocumentRequest(BaseModel):
    content: str


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: ConductorStorage | None,
    engine_override: ExecutionEngine | None,
    clock: Clock,
) -> None:
    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or build_storage(settings)

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "services"):
        app.state.broadcaster = LogBroadcaster()
        services = build_services(
            app.state.storage,
            settings=settings,
            engine=engine_override or build_engine(settings),
            broadcaster=app.state.broadcaster,
            clock=clock,
        )
        app.state.services = services
        app.state.routines = RoutineDispatcher(services)
        app.state.tasks = TaskDispatcher(services)
        app.state.brain = BrainLoop(services, routines=app.state.routines)


def create_app(
    *,
    storage: ConductorStorage | None = None,
    engine: ExecutionEngine | None = None,
    settings_override: Settings | None = None,
    clock: Clock = utc_now,
) -> FastAPI:
    settings = settings_override or get_settings()

    def _init(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            engine_override=engine,
            clock=clock,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _init(app)
        await app.state.storage.migrate()
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _init(app)

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PreconditionError)
    async def _precondition(_: Request, exc: PreconditionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    def _services(request: Request) -> DispatchServices:
        if not hasattr(request.app.state, "services"):
            _init(request.app)
        return request.app.state.services

    async def _owned_execution(
        request: Request, execution_id: int, user_id: int
    ) -> ExecutionRecord:
        execution = await _services(request).ledger.get_execution(execution_id)
        if execution is None or execution.user_id != user_id:
            raise HTTPException(status_code=404, detail="Execution not found")
        return execution

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks", response_model=TaskRecord)
    async def create_task(
        payload: CreateTaskRequest, request: Request, user_id: int = Header(alias="X-User-Id")
    ) -> TaskRecord:
        return await _services(request).lifecycle.propose_task(
            user_id=user_id,
            title=payload.title,
            description=payload.description,
            suggestion_reasoning=payload.suggestion_reasoning,
            priority=payload.priority,
            assigned_to_agent_id=payload.assigned_to_agent_id,
            assigned_to_module_id=payload.assigned_to_module_id,
        )

    @app.get("/tasks", response_model=list[TaskRecord])
    async def list_tasks(
        request: Request,
        status: TaskStatus | None = None,
        user_id: int = Header(alias="X-User-Id"),
    ) -> list[TaskRecord]:
        return await _services(request).storage.list_tasks(user_id=user_id, status=status)

    @app.get("/tasks/stats")
    async def task_stats(
        request: Request, user_id: int = Header(alias="X-User-Id")
    ) -> dict[str, int]:
        return await _services(request).lifecycle.count_by_status(user_id)

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    async def get_task(
        task_id: int, request: Request, user_id: int = Header(alias="X-User-Id")
    ) -> TaskRecord:
        return await _services(request).lifecycle.get_task(task_id, user_id=user_id)

    @app.patch("/tasks/{task_id}/status", response_model=TaskRecord)
    async def update_task_status(
        task_id: int,
        payload: UpdateTaskStatusRequest,
        request: Request,
        user_id: int = Header(alias="X-User-Id"),
    ) -> TaskRecord:
        return await _services(request).lifecycle.update_task_status(
            task_id,
            payload.status,
            changed_by=payload.changed_by,
            user_id=user_id,
            approval_reasoning=payload.approval_reasoning,
            rejection_reasoning=payload.rejection_reasoning,
            completion_summary=payload.completion_summary,
            blocked_reason=payload.blocked_reason,
            assigned_to_agent_id=payload.assigned_to_agent_id,
            assigned_to_module_id=payload.assigned_to_module_id,
        )

    @app.post("/tasks/{task_id}/approve", response_model=TaskRecord)
    async def approve_task(
        task_id: int,
        payload: ReviewTaskRequest,
        request: Request,
        user_id: int = Header(alias="X-User-Id"),
    ) -> TaskRecord:
        return await _services(request).lifecycle.approve_task(
            task_id,
            user_id=user_id,
            approved_by=payload.reviewed_by,
            approval_reasoning=payload.reasoning,
            assigned_to_agent_id=payload.assigned_to_agent_id,
            assigned_to_module_id=payload.assigned_to_module_id,
        )

    @app.post("/tasks/{task_id}/reject", response_model=TaskRecord)
    async def reject_task(
        task_id: int,
        payload: ReviewTaskRequest,
        request: Request,
        user_id: int = Header(alias="X-User-Id"),
    ) -> TaskRecord:
        return await _services(request).lifecycle.reject_task(
            task_id,
            user_id=user_id,
            rejected_by=payload.reviewed_by,
            rejection_reasoning=payload.reasoning,
        )

    @app.post("/tasks/{task_id}/run")
    async def run_task(
        task_id: int,
        payload: RunTaskRequest,
        request: Request,
        user_id: int = Header(alias="X-User-Id"),
    ) -> dict[str, Any]:
        task = await _services(request).lifecycle.get_task(task_id, user_id=user_id)
        agent_id = payload.agent_id or task.assigned_to_agent_id
        if agent_id is None:
            raise HTTPException(status_code=409, detail="Task has no assigned agent")
        result = await request.app.state.tasks.run_task(task_id, agent_id, user_id=user_id)
        return asdict(result)

    @app.post("/routines/{routine_id}/run")
    async def run_routine(
        routine_id: int,
        payload: RunRoutineRequest,
        request: Request,
        user_id: int = Header(alias="X-User-Id"),
    ) -> dict[str, Any]:
        _services(request)
        result = await request.app.state.routines.run_routine(
            routine_id, user_id=user_id, trigger_type="manual", params=payload.params
        )
        return asdict(result)

    @app.get("/executions/{execution_id}", response_model=ExecutionRecord)
    async def get_execution(
        execution_id: int, request: Request, user_id: int = Header(alias="X-User-Id")
    ) -> ExecutionRecord:
        return await _owned_execution(request, execution_id, user_id)

    @app.get("/executions/{execution_id}/logs", response_model=list[ExecutionLogRecord])
    async def get_execution_logs(
        execution_id: int,
        request: Request,
        since: int = 0,
        user_id: int = Header(alias="X-User-Id"),
    ) -> list[ExecutionLogRecord]:
        await _owned_execution(request, execution_id, user_id)
        return await _services(request).ledger.get_logs_since(execution_id, since)

    @app.get("/executions/{execution_id}/stream")
    async def stream_execution(
        execution_id: int,
        request: Request,
        since: int = 0,
        user_id: int = Header(alias="X-User-Id"),
    ) -> StreamingResponse:
        await _owned_execution(request, execution_id, user_id)
        services = _services(request)
        broadcaster: LogBroadcaster = request.app.state.broadcaster

        async def _events() -> AsyncIterator[str]:
            queue = broadcaster.subscribe_execution(execution_id)
            last_id = since
            try:
                for log in await services.ledger.get_logs_since(execution_id, last_id):
                    last_id = log.id
                    yield _sse("log", log.model_dump(mode="json"))
                execution = await services.ledger.get_execution(execution_id)
                if execution is not None and execution.status in TERMINAL_EXECUTION_STATUSES:
                    yield _sse("complete", {"status": execution.status})
                    return
                while True:
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=STREAM_HEARTBEAT_S)
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"
                        continue
                    if event.kind == "log":
                        if event.payload.get("id", 0) <= last_id:
                            continue
                        last_id = event.payload["id"]
                    yield _sse(event.kind, event.payload)
                    if event.kind == "complete":
                        return
            finally:
                broadcaster.unsubscribe(queue)

        return StreamingResponse(_events(), media_type="text/event-stream")

    @app.post("/brain/cycle")
    async def run_brain_cycle(
        request: Request, user_id: int = Header(alias="X-User-Id")
    ) -> dict[str, Any]:
        _services(request)
        result = await request.app.state.brain.run_cycle(user_id)
        return asdict(result)

    @app.get("/brain/decisions/latest", response_model=BrainDecisionRecord)
    async def latest_brain_decision(
        request: Request, user_id: int = Header(alias="X-User-Id")
    ) -> BrainDecisionRecord:
        decision = await _services(request).storage.get_latest_brain_decision(user_id)
        if decision is None:
            raise HTTPException(status_code=404, detail="No Brain decisions yet")
        return decision

    @app.get("/brain/documents", response_model=DocumentStoreRecord)
    async def get_brain_documents(
        request: Request, user_id: int = Header(alias="X-User-Id")
    ) -> DocumentStoreRecord:
        _services(request)
        return await request.app.state.brain.documents.get_or_create(user_id)

    @app.put("/brain/documents/{name}", response_model=DocumentStoreRecord)
    async def update_brain_document(
        name: Literal["vision", "goals"],
        payload: UpdateDocumentRequest,
        request: Request,
        user_id: int = Header(alias="X-User-Id"),
    ) -> DocumentStoreRecord:
        _services(request)
        return await request.app.state.brain.documents.update_document(
            user_id, name, payload.content
        )

    return app


app = create_app()


def _sse(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"
