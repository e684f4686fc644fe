"""Parse the Brain's structured decision out of free-form engine output."""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agent_conductor.errors import BrainDecisionError
from agent_conductor.storage.models import TASK_PRIORITIES

_FENCED_JSON = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_FENCED_ANY = re.compile(r"```\s*(.*?)\s*```", re.DOTALL)


class BrainDecision(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str = Field(min_length=1)
    reasoning: str = Field(min_length=1)
    routine_id: int
    routine_params: dict[str, Any] = Field(default_factory=dict)
    expected_outcome: str | None = None
    priority_level: str = "medium"

    @field_validator("priority_level", mode="before")
    @classmethod
    def _normalise_priority(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in TASK_PRIORITIES else "medium"


def _candidate_payloads(text: str) -> list[str]:
    candidates: list[str] = []
    for pattern in (_FENCED_JSON, _FENCED_ANY):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(1))
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    return candidates


def parse_decision(text: str) -> BrainDecision:
    """Extract and validate a decision; any missing required field is fatal."""
    if not text or not text.strip():
        raise BrainDecisionError("Brain returned an empty response")

    payload: dict[str, Any] | None = None
    for candidate in _candidate_payloads(text):
        try:
            loaded = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(loaded, dict):
            payload = loaded
            break
    if payload is None:
        raise BrainDecisionError(f"No JSON decision found in response: {text[:200]!r}")

    # Older prompts named the target "module".
    if "routine_id" not in payload and "module_id" in payload:
        payload["routine_id"] = payload["module_id"]
    if "routine_params" not in payload and "module_params" in payload:
        payload["routine_params"] = payload["module_params"]

    missing = [name for name in ("action", "reasoning", "routine_id") if not payload.get(name)]
    if missing:
        raise BrainDecisionError(f"Missing required fields: {', '.join(missing)}")
    try:
        return BrainDecision.model_validate(payload)
    except ValidationError as exc:
        raise BrainDecisionError(f"Invalid decision: {exc.errors()[0]['msg']}") from exc
