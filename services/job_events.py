"""
In-process change notifications for import jobs.

Every persisted job patch publishes the new snapshot; SSE clients subscribe
per job id. Subscribers that fall behind lose intermediate snapshots, never the
latest one.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Set

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "error", "cancelled", "deleted"})


class JobEventBus:
    def __init__(self, queue_size: int = 16):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def publish(self, job_id: str, snapshot: Dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(job_id, ())):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(snapshot)

    @asynccontextmanager
    async def subscribe(self, job_id: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[job_id].add(queue)
        logger.debug("Subscriber added for job %s (%d total)", job_id, len(self._subscribers[job_id]))
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(job_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    self._subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))


job_events = JobEventBus()
