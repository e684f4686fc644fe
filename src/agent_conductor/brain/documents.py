"""Strategic documents and the append-only memory log read by the Brain."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from agent_conductor.storage.base import ConductorStorage
from agent_conductor.storage.models import DocumentStoreRecord

DocumentName = Literal["vision", "goals", "analytics"]

DEFAULT_VISION = """# Vision

## What We Do
[Description of the product or service]

## Target Audience
[Who are the customers or users?]

## Mission
[What is the mission and purpose?]

## Tone & Values
[Voice, tone and core values]
"""

DEFAULT_GOALS = """# Goals

## Key Goals
- Grow the userbase
- Increase user retention
- Make users happy
- Increase revenue
- Achieve profitability
"""

DEFAULT_MEMORY = (
    "# Memory Log\n\n"
    "This file contains a running log of notable events, decisions, and insights.\n\n"
    "---\n\n"
)


def format_memory_entry(entry: str, *, at: datetime | None = None) -> str:
    timestamp = (at or datetime.now(tz=UTC)).isoformat()
    return f"\n## {timestamp}\n{entry}\n"


class DocumentStore:
    def __init__(self, storage: ConductorStorage) -> None:
        self.storage = storage

    async def get_or_create(self, user_id: int) -> DocumentStoreRecord:
        record = await self.storage.get_document_store(user_id)
        if record is not None:
            return record
        return await self.storage.save_document_store(
            DocumentStoreRecord(
                user_id=user_id,
                vision_md=DEFAULT_VISION,
                goals_md=DEFAULT_GOALS,
                memory_md=DEFAULT_MEMORY,
            )
        )

    async def update_document(
        self, user_id: int, name: DocumentName, content: str
    ) -> DocumentStoreRecord:
        record = await self.get_or_create(user_id)
        return await self.storage.save_document_store(
            record.model_copy(update={f"{name}_md": content})
        )

    async def update_analytics(
        self, user_id: int, *, markdown: str, metrics: dict[str, Any]
    ) -> DocumentStoreRecord:
        record = await self.get_or_create(user_id)
        return await self.storage.save_document_store(
            record.model_copy(update={"analytics_md": markdown, "analytics_json": metrics})
        )

    async def append_memory(
        self, user_id: int, entry: str, *, at: datetime | None = None
    ) -> DocumentStoreRecord:
        record = await self.get_or_create(user_id)
        return await self.storage.save_document_store(
            record.model_copy(
                update={"memory_md": record.memory_md + format_memory_entry(entry, at=at)}
            )
        )
