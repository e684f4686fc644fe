"""Prompt builders for routine runs, task runs and Brain cycles."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime

from agent_conductor.storage.models import (
    AgentRecord,
    DocumentStoreRecord,
    ExecutionRecord,
    RoutineRecord,
    TaskRecord,
)


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(tz=UTC)


def build_routine_prompt(
    agent: AgentRecord, routine: RoutineRecord, *, now: datetime | None = None
) -> str:
    current = _now(now)
    config = routine.config or {}
    goal = config.get("goal") or routine.description or f"Execute routine: {routine.name}"

    sections = [
        agent.role or f"You are {agent.name}.",
        "## Current Routine",
        "\n".join(
            [
                f"**Routine:** {routine.name}",
                f"**Type:** {routine.type}",
                f"**Description:** {routine.description or 'N/A'}",
                f"**Frequency:** {routine.frequency}",
            ]
        ),
        f"## Goal\n\n{goal}",
        "## Context\n\n"
        f"**Today's Date:** {current:%A, %B %d, %Y}\n"
        f"**Current Time:** {current:%H:%M:%S %Z}",
    ]
    if config.get("guardrails"):
        sections.append(f"## Guardrails\n\n{config['guardrails']}")
    if config.get("repository"):
        sections.append(
            f"## Repository\n\nA snapshot of `{config['repository']}` may be available under `./repo`."
        )
    sections.append(
        "## Instructions\n\n"
        "Execute this routine as defined using the tools available to you. "
        "Finish with a summary of what you accomplished."
    )
    return "\n\n".join(sections) + "\n"


def build_task_prompt(agent: AgentRecord, task: TaskRecord, *, now: datetime | None = None) -> str:
    current = _now(now)
    sections = [
        agent.role or f"You are {agent.name}.",
        "## Current Task Assignment\n\n"
        "You have been assigned a specific task. Review the details below and complete it "
        "using your available tools.",
        "### Task Information\n"
        f"- **Task ID:** {task.id}\n"
        f"- **Title:** {task.title}\n"
        f"- **Priority:** {task.priority}\n"
        f"- **Status:** {task.status}",
        f"### What to Do\n{task.description or 'No detailed description provided.'}",
        f"### Why This Matters\n{task.suggestion_reasoning or 'No reasoning provided.'}",
    ]
    if task.approval_reasoning:
        sections.append(f"### Approval Reasoning\n{task.approval_reasoning}")
    if task.blocked_reason:
        sections.append(f"### Previous Blocker\n{task.blocked_reason}")
    sections.append(
        "## Current Date & Time\n\n"
        f"**Today's date:** {current:%a %b %d %Y} ({current:%Y-%m-%d})\n"
        f"**Current time:** {current.isoformat()}"
    )
    sections.append(
        "## Your Mission\n\n"
        "Focus on this task only. When done, reply with a summary of what you accomplished, "
        "the evidence (links, files, metrics), any issues you hit, and suggested follow-up work. "
        "Your summary is saved as the task completion record."
    )
    return "\n\n".join(sections)


@dataclass
class BrainContext:
    user_id: int
    documents: DocumentStoreRecord
    routines: list[RoutineRecord] = field(default_factory=list)
    agents: dict[int, AgentRecord] = field(default_factory=dict)
    recent_executions: list[ExecutionRecord] = field(default_factory=list)
    connected_services: list[str] = field(default_factory=list)
    task_counts: dict[str, int] = field(default_factory=dict)


def _format_routine(routine: RoutineRecord, agent: AgentRecord | None) -> str:
    agent_label = f"{agent.name} (ID: {agent.id})" if agent else f"agent {routine.agent_id}"
    return (
        f"### {routine.name} (ID: {routine.id})\n"
        f"- Type: {routine.type}\n"
        f"- Agent: {agent_label}\n"
        f"- Frequency: {routine.frequency}\n"
        f"- Status: {routine.status}\n"
        f"- Config: {json.dumps(routine.config, sort_keys=True, default=str)}"
    )


def _format_execution(execution: ExecutionRecord, routines: dict[int, RoutineRecord]) -> str:
    routine = routines.get(execution.routine_id) if execution.routine_id else None
    label = routine.name if routine else (
        f"task {execution.task_id}" if execution.task_id else "unknown"
    )
    line = f"- [{execution.started_at.isoformat()}] {label}: {execution.status}"
    if execution.error_message:
        line += f" - Error: {execution.error_message}"
    return (
        f"{line}\n  Duration: {execution.duration_ms or 0}ms, Cost: ${execution.cost_usd or 0}"
    )


def build_brain_prompt(context: BrainContext, *, recent_limit: int = 10) -> str:
    docs = context.documents
    routines_by_id = {routine.id: routine for routine in context.routines}
    routine_lines = "\n\n".join(
        _format_routine(routine, context.agents.get(routine.agent_id))
        for routine in context.routines
    ) or "No routines available."
    execution_lines = "\n".join(
        _format_execution(execution, routines_by_id)
        for execution in context.recent_executions[:recent_limit]
    ) or "No recent executions."
    task_lines = ", ".join(
        f"{status}: {count}" for status, count in context.task_counts.items() if count
    ) or "No tasks."

    return f"""You are the Brain agent for user {context.user_id}.

Your role is to run this operation autonomously by deciding what to execute next.

# Current Context

## Vision
{docs.vision_md}

## Goals
{docs.goals_md}

## Analytics & Performance
{docs.analytics_md}

### Structured Metrics
{json.dumps(docs.analytics_json, indent=2, sort_keys=True, default=str)}

## Recent Memory & Activity
{docs.memory_md}

## Available Routines
{routine_lines}

## Recent Executions (last {recent_limit})
{execution_lines}

## Task Board
{task_lines}

## Connected Services
{", ".join(context.connected_services) or "None"}

---

# Task Management

Before choosing a routine, review suggested tasks with `get_available_tasks` (status="suggested").
Approve the ones that serve the goals with `approve_task` (include approval_reasoning and
either assign_to_agent_id or assign_to_module_id) and reject the rest with `reject_task`
(include rejection_reasoning).

# Your Decision

Decide the SINGLE BEST routine to run right now. Return ONLY a JSON object:

```json
{{
  "action": "Brief description of what to do",
  "reasoning": "Why this is the best next step",
  "routine_id": 123,
  "routine_params": {{"goal": "Specific instruction for the routine"}},
  "expected_outcome": "What success looks like",
  "priority_level": "low|medium|high|critical"
}}
```

Choose routine_id from the Available Routines list above.
"""
