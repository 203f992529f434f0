"""Per-program change notifications.

The workflow publishes the authoritative row after every successful
mutation.  Subscribers (builder sessions, the ``/changes`` WebSocket) get
the new row pushed to an asyncio queue.  Only the latest state matters, so
a slow subscriber whose queue is full loses its oldest pending row rather
than blocking the publisher.
"""

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Dict, Set

from app.models.program import Program

logger = logging.getLogger(__name__)

_QUEUE_SIZE = 16


class ProgramChangeHub:
    def __init__(self, queue_size: int = _QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, program_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(str(program_id), set()).add(queue)
        return queue

    def unsubscribe(self, program_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(str(program_id))
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[str(program_id)]

    def subscriber_count(self, program_id: str) -> int:
        return len(self._subscribers.get(str(program_id), ()))

    def publish(self, program: Program) -> int:
        """Push ``program`` to every subscriber of its id; returns how many."""
        queues = list(self._subscribers.get(str(program.id), ()))
        for queue in queues:
            if queue.full():
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
            queue.put_nowait(program)
        if queues:
            logger.debug(
                "Published program %s v%s to %d subscriber(s)",
                program.id,
                program.version,
                len(queues),
            )
        return len(queues)

    @contextlib.asynccontextmanager
    async def subscription(self, program_id: str) -> AsyncIterator[asyncio.Queue]:
        queue = self.subscribe(program_id)
        try:
            yield queue
        finally:
            self.unsubscribe(program_id, queue)
