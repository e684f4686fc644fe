"""In-process fan-out of execution log events to live subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamEvent:
    kind: Literal["log", "complete"]
    execution_id: int
    user_id: int | None
    payload: dict[str, Any] = field(default_factory=dict)


class LogBroadcaster:
    """Pub/sub keyed by execution id and by user id.

    Subscribers get a bounded queue; a full queue drops the event for that
    subscriber only. Persisted logs remain the source of truth.
    """

    def __init__(self, *, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._by_execution: dict[int, set[asyncio.Queue[StreamEvent]]] = defaultdict(set)
        self._by_user: dict[int, set[asyncio.Queue[StreamEvent]]] = defaultdict(set)

    def subscribe_execution(self, execution_id: int) -> asyncio.Queue[StreamEvent]:
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._by_execution[execution_id].add(queue)
        return queue

    def subscribe_user(self, user_id: int) -> asyncio.Queue[StreamEvent]:
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._by_user[user_id].add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StreamEvent]) -> None:
        for registry in (self._by_execution, self._by_user):
            for key in [key for key, queues in registry.items() if queue in queues]:
                registry[key].discard(queue)
                if not registry[key]:
                    del registry[key]

    def subscriber_count(self, execution_id: int) -> int:
        return len(self._by_execution.get(execution_id, ()))

    def publish(self, event: StreamEvent) -> None:
        targets = set(self._by_execution.get(event.execution_id, ()))
        if event.user_id is not None:
            targets |= self._by_user.get(event.user_id, set())
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "log_stream event=dropped execution_id=%s kind=%s", event.execution_id, event.kind
                )
