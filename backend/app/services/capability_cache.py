"""Short-TTL cache for actor capability lookups.

One page load fans out into several API calls that all need the caller's
roles.  The cache keeps each ``load_capabilities`` result for a few seconds
and shares a single in-flight lookup between concurrent callers for the
same user, so a burst of requests costs one store round-trip.

The cache is an explicit object owned by ``app.state`` (see ``main.py``);
tests build their own with a fake clock.
"""

import asyncio
import logging
import os
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv

from app.models.actor import Actor

load_dotenv()

logger = logging.getLogger(__name__)

CAPABILITY_CACHE_TTL_SECONDS = float(os.getenv("CAPABILITY_CACHE_TTL_SECONDS", "30"))
_MAX_ENTRIES = 1000

Loader = Callable[[str], Awaitable[Actor]]


class CapabilityCache:
    """TTL memoisation of ``loader(user_id)`` with in-flight deduplication.

    Args:
        loader: Async function resolving a user id to an :class:`Actor`
            (normally ``ProgramStore.load_capabilities``).
        ttl_seconds: How long a resolved entry stays fresh.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        loader: Loader,
        ttl_seconds: float = CAPABILITY_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Actor, float]] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}

    def peek(self, user_id: str) -> Optional[Actor]:
        """Fresh cached entry, without triggering a lookup."""
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        actor, cached_at = entry
        if self._clock() - cached_at >= self._ttl:
            self._entries.pop(user_id, None)
            return None
        return actor

    async def get(self, user_id: str) -> Actor:
        actor = self.peek(user_id)
        if actor is not None:
            return actor

        pending = self._in_flight.get(user_id)
        if pending is not None:
            return await asyncio.shield(pending)

        logger.debug("Capability cache miss for user %s", user_id)
        future = asyncio.get_running_loop().create_future()
        self._in_flight[user_id] = future
        try:
            actor = await self._loader(user_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            # Failures are shared with waiters but never cached.
            future.set_exception(exc)
            # Mark retrieved so asyncio does not log it when nobody is waiting.
            future.exception()
            raise
        else:
            self._store(user_id, actor)
            future.set_result(actor)
            return actor
        finally:
            if self._in_flight.get(user_id) is future:
                del self._in_flight[user_id]

    def _store(self, user_id: str, actor: Actor) -> None:
        now = self._clock()
        self._entries[user_id] = (actor, now)
        if len(self._entries) > _MAX_ENTRIES:
            expired = [k for k, (_, ts) in self._entries.items() if now - ts >= self._ttl]
            for key in expired:
                del self._entries[key]

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
