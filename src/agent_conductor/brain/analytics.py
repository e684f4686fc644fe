"""Seven-day execution metrics and anomaly notes for the Brain's context."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from agent_conductor.brain.documents import DocumentStore
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import ExecutionRecord, RoutineRecord

logger = logging.getLogger(__name__)

WINDOW = timedelta(days=7)
FAILURE_RATE_THRESHOLD = 0.3
COST_THRESHOLD_USD = 1.0


def collect_metrics(
    routines: list[RoutineRecord],
    executions: list[ExecutionRecord],
    *,
    now: datetime,
) -> dict[str, Any]:
    per_routine: dict[int, dict[str, Any]] = {
        routine.id: {
            "routine_id": routine.id,
            "name": routine.name,
            "type": routine.type,
            "executions": 0,
            "succeeded": 0,
            "failed": 0,
            "cost_usd": 0.0,
            "avg_duration_ms": 0,
            "_durations": [],
        }
        for routine in routines
    }
    total_cost = 0.0
    total_failed = 0
    task_executions = 0

    for execution in executions:
        cost = execution.cost_usd or 0.0
        total_cost += cost
        if execution.status == "failed":
            total_failed += 1
        if execution.routine_id is None:
            task_executions += 1
            continue
        bucket = per_routine.get(execution.routine_id)
        if bucket is None:
            continue
        bucket["executions"] += 1
        bucket["cost_usd"] += cost
        if execution.status == "completed":
            bucket["succeeded"] += 1
        elif execution.status == "failed":
            bucket["failed"] += 1
        if execution.duration_ms is not None:
            bucket["_durations"].append(execution.duration_ms)

    for bucket in per_routine.values():
        durations = bucket.pop("_durations")
        if durations:
            bucket["avg_duration_ms"] = int(sum(durations) / len(durations))
        bucket["cost_usd"] = round(bucket["cost_usd"], 4)

    return {
        "timestamp": now.isoformat(),
        "window_days": WINDOW.days,
        "summary": {
            "active_routines": sum(1 for routine in routines if routine.status == "active"),
            "total_executions": len(executions),
            "task_executions": task_executions,
            "total_failed": total_failed,
            "total_cost_usd": round(total_cost, 4),
        },
        "routines": list(per_routine.values()),
    }


def render_markdown(metrics: dict[str, Any]) -> str:
    summary = metrics["summary"]
    lines = [
        "# Analytics Summary",
        "",
        f"Last updated: {metrics['timestamp']}",
        "",
        f"## Execution Summary (Last {metrics['window_days']} Days)",
        "",
        f"- **Active Routines**: {summary['active_routines']}",
        f"- **Total Executions**: {summary['total_executions']}",
        f"- **Failed Executions**: {summary['total_failed']}",
        f"- **Total Cost**: ${summary['total_cost_usd']:.4f}",
        "",
    ]
    if metrics["routines"]:
        lines.extend(["### Routine Breakdown", ""])
        for item in metrics["routines"]:
            lines.append(
                f"- **{item['name']}** ({item['type']}): {item['executions']} executions, "
                f"{item['failed']} failed, ${item['cost_usd']:.4f}, "
                f"avg {item['avg_duration_ms']}ms"
            )
        lines.append("")
    return "\n".join(lines)


def detect_anomalies(metrics: dict[str, Any]) -> list[str]:
    summary = metrics["summary"]
    anomalies: list[str] = []
    total = summary["total_executions"]
    if total > 0:
        failure_rate = summary["total_failed"] / total
        if failure_rate > FAILURE_RATE_THRESHOLD:
            anomalies.append(
                f"High failure rate: {failure_rate * 100:.1f}% of executions failed "
                f"in the last {metrics['window_days']} days"
            )
    if summary["total_cost_usd"] > COST_THRESHOLD_USD:
        anomalies.append(
            f"Significant engine costs: ${summary['total_cost_usd']:.2f} spent "
            f"in the last {metrics['window_days']} days"
        )
    if total == 0 and summary["active_routines"] > 0:
        anomalies.append(
            f"No executions in the last {metrics['window_days']} days despite "
            f"{summary['active_routines']} active routines"
        )
    return anomalies


class AnalyticsRefresher:
    def __init__(self, storage: ConductorStorage, documents: DocumentStore) -> None:
        self.storage = storage
        self.documents = documents

    async def refresh(self, user_id: int, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.now(tz=UTC)
        routines = await self.storage.list_routines(user_id=user_id)
        executions = await self.storage.list_executions(user_id=user_id, since=now - WINDOW)
        metrics = collect_metrics(routines, executions, now=now)

        await self.documents.update_analytics(
            user_id, markdown=render_markdown(metrics), metrics=metrics
        )
        anomalies = detect_anomalies(metrics)
        if anomalies:
            await self.documents.append_memory(
                user_id,
                "### Analytics Anomaly Report\n\n" + "\n".join(f"- {item}" for item in anomalies),
                at=now,
            )
        logger.info(
            "analytics event=refreshed user_id=%s executions=%s anomalies=%s",
            user_id,
            metrics["summary"]["total_executions"],
            len(anomalies),
        )
        return metrics
