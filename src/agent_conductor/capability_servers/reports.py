"""Dated business reports served to agents over stdio MCP.

Routines that analyse metrics save their findings here so later runs (and the
Brain) can compare against earlier days. Dates travel as ``YYYY-MM-DD``.
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import date
from typing import Any

from mcp.server.fastmcp import FastMCP

from agent_conductor.capability_servers.common import open_storage, tool_error
from agent_conductor.errors import ConductorError
from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import ReportRecord

logger = logging.getLogger(__name__)

INSTRUCTIONS = """\
Save and look up business reports. After analysing metrics, call create_report
with markdown content and the date being reported on. Use query_reports or
get_reports_by_date to compare against earlier reports.
"""

DEFAULT_QUERY_LIMIT = 50


def _parse_date(value: str | date | None, field: str) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"{field} must be a YYYY-MM-DD date, got {value!r}") from None


def report_payload(report: ReportRecord) -> dict[str, Any]:
    return report.model_dump(mode="json")


class ReportTools:
    def __init__(self, storage: ConductorStorage, *, user_id: int) -> None:
        self.storage = storage
        self.user_id = user_id

    async def create_report(
        self,
        name: str,
        report_type: str,
        report_date: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        execution_id: int | None = None,
        module_id: int | None = None,
    ) -> dict[str, Any]:
        report = await self.storage.create_report(
            user_id=self.user_id,
            name=name,
            report_type=report_type,
            report_date=_parse_date(report_date, "report_date"),
            content=content,
            metadata=metadata or {},
            execution_id=execution_id,
            module_id=module_id,
        )
        logger.info(
            "report event=created report_id=%s user_id=%s type=%s date=%s",
            report.id,
            self.user_id,
            report.report_type,
            report.report_date,
        )
        return {
            "success": True,
            "message": "Report created successfully",
            "report": {
                "id": report.id,
                "name": report.name,
                "report_type": report.report_type,
                "report_date": report.report_date.isoformat(),
                "created_at": report.created_at.isoformat(),
            },
        }

    async def query_reports(
        self,
        report_type: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> dict[str, Any]:
        reports = await self.storage.list_reports(
            user_id=self.user_id,
            report_type=report_type,
            start_date=_parse_date(start_date, "start_date"),
            end_date=_parse_date(end_date, "end_date"),
            limit=max(limit, 0),
        )
        return {
            "success": True,
            "count": len(reports),
            "reports": [report_payload(report) for report in reports],
        }

    async def get_reports_by_date(
        self, report_date: str, report_type: str | None = None
    ) -> dict[str, Any]:
        day = _parse_date(report_date, "report_date")
        reports = await self.storage.list_reports(
            user_id=self.user_id, report_type=report_type, report_date=day
        )
        return {
            "success": True,
            "date": day.isoformat(),
            "count": len(reports),
            "reports": [report_payload(report) for report in reports],
        }


async def _call(coro: Any) -> str:
    try:
        payload = await coro
    except (ConductorError, ValueError) as exc:
        return tool_error(exc)
    return json.dumps(payload, indent=2, default=str)


def create_server(tools: ReportTools) -> FastMCP:
    mcp = FastMCP("reports", instructions=INSTRUCTIONS)

    @mcp.tool()
    async def create_report(
        name: str,
        report_type: str,
        report_date: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        execution_id: int | None = None,
        module_id: int | None = None,
    ) -> str:
        """Save a new report with markdown content.

        Args:
            name: Report name, e.g. "Render Analytics Daily Report"
            report_type: Type identifier, e.g. "render_analytics" or "slack_digest"
            report_date: Date being reported on (YYYY-MM-DD)
            content: Report body in markdown
            metadata: Optional metrics summary or filters used
            execution_id: Optional execution that produced the report
            module_id: Optional routine that produced the report
        """
        return await _call(
            tools.create_report(
                name, report_type, report_date, content, metadata, execution_id, module_id
            )
        )

    @mcp.tool()
    async def query_reports(
        report_type: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> str:
        """Reports matching the filters, newest report date first."""
        return await _call(tools.query_reports(report_type, start_date, end_date, limit))

    @mcp.tool()
    async def get_reports_by_date(report_date: str, report_type: str | None = None) -> str:
        """Every report for one date (YYYY-MM-DD), optionally of a single type."""
        return await _call(tools.get_reports_by_date(report_date, report_type))

    return mcp


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Reports MCP server")
    parser.add_argument("--user-id", type=int, required=True)
    parser.add_argument("--agent-id", type=int, default=None)
    args = parser.parse_args(argv)

    storage = open_storage()
    logger.info("capability_server event=start name=reports user_id=%s", args.user_id)
    create_server(ReportTools(storage, user_id=args.user_id)).run()


if __name__ == "__main__":
    main()
