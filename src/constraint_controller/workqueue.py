"""Rate-limited work queue driving reconciliation passes.

Semantics follow the usual controller work queue:
- A key queued several times before it is picked up is processed once
- A key is never handed to two workers at once; a key added while it is
  being processed is queued again when its current pass finishes
- Failed keys come back after an exponential per-key delay, reset by forget()

All methods except add_threadsafe() must be called from the event loop.
"""

from __future__ import annotations

import asyncio
import logging

from .config import REQUEUE_BASE_DELAY_SECONDS, REQUEUE_MAX_DELAY_SECONDS

logger = logging.getLogger(__name__)


class WorkQueue:
    """Deduplicating, per-key serialized queue of rule identities."""

    def __init__(
        self,
        base_delay_seconds: float = REQUEUE_BASE_DELAY_SECONDS,
        max_delay_seconds: float = REQUEUE_MAX_DELAY_SECONDS,
    ) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._shutting_down = False
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Record the loop add_threadsafe() should schedule onto."""
        self._loop = loop

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_threadsafe(self, key: str) -> None:
        """Queue a key from a thread outside the event loop."""
        if self._loop is None:
            raise RuntimeError("WorkQueue.bind() must be called before add_threadsafe()")
        self._loop.call_soon_threadsafe(self.add, key)

    def backoff_delay(self, key: str) -> float:
        failures = self._failures.get(key, 0)
        return min(self._base_delay * (2**failures), self._max_delay)

    def add_rate_limited(self, key: str) -> float:
        """Queue a key after its backoff delay. Returns the delay used."""
        delay = self.backoff_delay(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        asyncio.get_running_loop().call_later(delay, self.add, key)
        return delay

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str | None:
        """Wait for the next key. Returns None once the queue shuts down."""
        key = await self._queue.get()
        if key is None:
            # Wake the next waiting worker as well
            self._queue.put_nowait(None)
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        """Mark a key's pass finished, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        """Stop handing out keys. Workers receive None from get()."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Work queue shutting down", extra={"pending": len(self._dirty)})
        self._queue.put_nowait(None)
