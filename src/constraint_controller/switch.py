"""Processing gate shared by every constraint reconciler.

Each reconciliation pass is bracketed by enter()/exit(). Passes hold the
read side of the lock, so stop() blocks until every in-flight pass has
finished; once it returns, no pass will act until start() is called.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from .rwlock import ReadWriteLock

logger = logging.getLogger(__name__)


class ProcessingGate:
    """Externally toggled on/off switch for reconciliation passes."""

    def __init__(self, enabled: bool = True) -> None:
        self._lock = ReadWriteLock()
        self._enabled = enabled

    def enter(self) -> bool:
        """Begin a pass. Must be paired with exit() even when disabled."""
        self._lock.acquire_read()
        return self._enabled

    def exit(self) -> None:
        self._lock.release_read()

    @contextmanager
    def entered(self) -> Iterator[bool]:
        enabled = self.enter()
        try:
            yield enabled
        finally:
            self.exit()

    def stop(self) -> None:
        """Disable processing, waiting for in-flight passes to drain."""
        with self._lock.write_locked():
            self._enabled = False
        logger.info("Constraint processing disabled")

    def start(self) -> None:
        with self._lock.write_locked():
            self._enabled = True
        logger.info("Constraint processing enabled")

    @property
    def enabled(self) -> bool:
        with self._lock.read_locked():
            return self._enabled
