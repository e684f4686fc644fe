"""Storage models shared by dispatchers, API and persistence backends."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field

AgentStatus = Literal["active", "inactive"]
RoutineStatus = Literal["active", "paused"]
Frequency = Literal["manual", "auto", "daily", "weekly"]
TaskStatus = Literal[
    "suggested",
    "approved",
    "in_progress",
    "waiting",
    "blocked",
    "completed",
    "rejected",
    "failed",
]
TaskPriority = Literal["low", "medium", "high", "critical"]
ExecutionStatus = Literal["pending", "running", "completed", "failed"]
TriggerType = Literal["manual", "scheduled", "task_assignment", "brain"]
LogLevel = Literal["debug", "info", "warning", "error"]

TASK_STATUSES: tuple[str, ...] = get_args(TaskStatus)
TASK_PRIORITIES: tuple[str, ...] = get_args(TaskPriority)


class AgentRecord(BaseModel):
    """A long-lived worker persona owned by one user."""

    id: int
    user_id: int
    name: str
    role: str = ""
    agent_type: str = "general"
    status: AgentStatus = "active"
    # capabilities, max_turns, mcp_config
    config: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    workspace_path: str | None = None
    total_routine_runs: int = 0
    total_task_completions: int = 0
    created_at: datetime
    updated_at: datetime


class RoutineRecord(BaseModel):
    """A named, repeatable job bound to one agent."""

    id: int
    user_id: int
    agent_id: int
    name: str
    description: str = ""
    type: str = "general"
    frequency: Frequency = "manual"
    status: RoutineStatus = "active"
    # goal, guardrails, capabilities, mcp_config, max_turns, repository
    config: dict[str, Any] = Field(default_factory=dict)
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TaskRecord(BaseModel):
    """A unit of work moving through the approval state machine."""

    id: int
    user_id: int
    title: str
    description: str = ""
    priority: TaskPriority = "medium"
    status: TaskStatus = "suggested"
    suggestion_reasoning: str | None = None
    approval_reasoning: str | None = None
    completion_summary: str | None = None
    rejection_reasoning: str | None = None
    blocked_reason: str | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    started_at: datetime | None = None
    blocked_at: datetime | None = None
    completed_at: datetime | None = None
    last_status_change_at: datetime | None = None
    last_status_change_by: str | None = None
    proposed_by_agent_id: int | None = None
    assigned_to_agent_id: int | None = None
    assigned_to_module_id: int | None = None
    brain_decision_id: int | None = None
    execution_id: int | None = None
    created_at: datetime
    updated_at: datetime


class ExecutionRecord(BaseModel):
    """One attempt to run a routine or task."""

    id: int
    user_id: int
    routine_id: int | None = None
    task_id: int | None = None
    agent_id: int | None = None
    trigger_type: TriggerType = "manual"
    status: ExecutionStatus = "running"
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None
    output: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExecutionLogRecord(BaseModel):
    id: int
    execution_id: int
    level: LogLevel = "info"
    stage: str | None = None
    message: str
    metadata: dict[str, Any] | None = None
    timestamp: datetime


class BrainDecisionRecord(BaseModel):
    """The structured outcome of one Brain cycle."""

    id: int
    user_id: int
    action: str
    reasoning: str
    routine_id: int | None = None
    agent_id: int | None = None
    task_id: int | None = None
    priority: TaskPriority = "medium"
    metadata: dict[str, Any] = Field(default_factory=dict)
    execution_id: int | None = None
    created_at: datetime


class ReportRecord(BaseModel):
    """A dated markdown report saved by an agent or routine."""

    id: int
    user_id: int
    execution_id: int | None = None
    module_id: int | None = None
    name: str
    report_type: str
    report_date: date
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class DocumentStoreRecord(BaseModel):
    """Per-user strategic documents read by the Brain."""

    user_id: int
    vision_md: str = ""
    goals_md: str = ""
    analytics_md: str = ""
    analytics_json: dict[str, Any] = Field(default_factory=dict)
    memory_md: str = ""
    updated_at: datetime | None = None


class EncryptedSecret(BaseModel):
    """AES-GCM ciphertext with hex-encoded parts."""

    encrypted: str
    iv: str
    auth_tag: str


class ServiceConnectionRecord(BaseModel):
    user_id: int
    service_name: str
    status: str = "connected"
    credentials: dict[str, EncryptedSecret] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
