"""Shared wiring for the internal capability servers."""

from __future__ import annotations

import json
import logging

from agent_conductor.config.settings import get_settings
from agent_conductor.runtime import build_storage
from agent_conductor.storage.base import ConductorStorage


def open_storage() -> ConductorStorage:
    settings = get_settings()
    # stdout carries the MCP protocol; logs go to stderr.
    logging.basicConfig(level=settings.log_level)
    return build_storage(settings)


def tool_error(exc: Exception) -> str:
    return json.dumps({"error": str(exc), "type": type(exc).__name__}, indent=2)
