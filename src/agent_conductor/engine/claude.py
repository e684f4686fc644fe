"""Execution engine backed by the Claude Agent SDK."""

from __future__ import annotations

import logging
import time
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from agent_conductor.engine.base import EngineOptions, EngineResult, ProgressEvent
from agent_conductor.errors import EngineRunError

logger = logging.getLogger(__name__)

_STALE_SESSION_MARKERS = ("no conversation found", "session not found")


class ClaudeAgentEngine:
    """Run one prompt to completion and report progress along the way."""

    def __init__(self, *, model: str = "", permission_mode: str = "bypassPermissions") -> None:
        self.model = model
        self.permission_mode = permission_mode

    def _build_options(self, options: EngineOptions, *, resume: bool) -> ClaudeAgentOptions:
        sdk_options = ClaudeAgentOptions(
            cwd=options.workspace_path,
            max_turns=options.max_turns,
            permission_mode=self.permission_mode,
            mcp_servers={
                name: descriptor.model_dump() for name, descriptor in options.capabilities.items()
            },
        )
        if self.model:
            sdk_options.model = self.model
        if options.system_prompt:
            sdk_options.system_prompt = options.system_prompt
        if resume and options.resume_session_id:
            sdk_options.resume = options.resume_session_id
        return sdk_options

    async def run(self, prompt: str, options: EngineOptions) -> EngineResult:
        try:
            result = await self._run_once(prompt, options, resume=True)
        except EngineRunError as exc:
            if not (options.resume_session_id and _is_stale_session(exc)):
                raise
            stale = True
        else:
            stale = bool(
                options.resume_session_id
                and not result.success
                and _is_stale_session(result.error)
            )
        if stale:
            logger.warning(
                "engine event=stale_session session_id=%s action=start_fresh",
                options.resume_session_id,
            )
            result = await self._run_once(prompt, options, resume=False)
        return result

    async def _run_once(self, prompt: str, options: EngineOptions, *, resume: bool) -> EngineResult:
        started_at = time.perf_counter()
        sdk_options = self._build_options(options, resume=resume)
        output_parts: list[str] = []
        result = EngineResult(success=False)
        turn_count = 0

        try:
            async with ClaudeSDKClient(options=sdk_options) as client:
                await client.query(prompt)
                async for message in client.receive_response():
                    if isinstance(message, SystemMessage):
                        if message.subtype == "init":
                            result.session_id = message.data.get("session_id")
                            result.model = message.data.get("model")
                            await _emit(
                                options,
                                ProgressEvent(
                                    stage="initialized",
                                    message="Agent initialized",
                                    model=result.model,
                                ),
                            )
                    elif isinstance(message, AssistantMessage):
                        turn_count += 1
                        for block in message.content:
                            if isinstance(block, TextBlock):
                                output_parts.append(block.text)
                                await _emit(
                                    options,
                                    ProgressEvent(
                                        stage="thinking",
                                        message=block.text[:500],
                                        turn_count=turn_count,
                                    ),
                                )
                            elif isinstance(block, ToolUseBlock):
                                await _emit(
                                    options,
                                    ProgressEvent(
                                        stage="tool_use",
                                        message=f"Using tool: {block.name}",
                                        tool=block.name,
                                        turn_count=turn_count,
                                    ),
                                )
                    elif isinstance(message, ResultMessage):
                        result.success = not message.is_error
                        result.session_id = message.session_id or result.session_id
                        result.turn_count = message.num_turns or turn_count
                        result.cost_usd = message.total_cost_usd
                        result.duration_ms = message.duration_ms
                        if message.result:
                            result.output = message.result
                        if message.is_error:
                            result.error = (
                                message.result or message.subtype or "engine reported an error"
                            )
        except ClaudeSDKError as exc:
            raise EngineRunError(str(exc)) from exc

        if not result.output:
            result.output = "\n".join(output_parts).strip()
        if result.duration_ms is None:
            result.duration_ms = _duration_ms(started_at)
        if not result.turn_count:
            result.turn_count = turn_count

        await _emit(
            options,
            ProgressEvent(
                stage="completed",
                message="Agent finished" if result.success else f"Agent failed: {result.error}",
                turn_count=result.turn_count,
                data={"cost_usd": result.cost_usd, "duration_ms": result.duration_ms},
            ),
        )
        return result


async def _emit(options: EngineOptions, event: ProgressEvent) -> None:
    if options.on_progress is not None:
        await options.on_progress(event)


def _is_stale_session(error: Any) -> bool:
    text = str(error or "").lower()
    return any(marker in text for marker in _STALE_SESSION_MARKERS)


def _duration_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)
