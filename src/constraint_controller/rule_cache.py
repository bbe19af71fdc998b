"""Tally of rules currently loaded in the policy engine.

The cache is shared by every per-kind reconciler. Writers touch one entry
at a time; the aggregation reads the whole table under the read lock so
each metrics export reflects a single instant.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING

from .models import ALL_STATUSES, KNOWN_ENFORCEMENT_ACTIONS, Tag
from .rwlock import ReadWriteLock

if TYPE_CHECKING:
    from .metrics import MetricsReporter

logger = logging.getLogger(__name__)


class RuleCache:
    """Thread-safe mapping from rule identity to Tag."""

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._entries: dict[str, Tag] = {}

    def put(self, identity: str, tag: Tag) -> None:
        """Insert or overwrite the tag for an identity."""
        with self._lock.write_locked():
            self._entries[identity] = tag

    def remove(self, identity: str) -> None:
        """Drop an identity; no-op if absent."""
        with self._lock.write_locked():
            self._entries.pop(identity, None)

    def get(self, identity: str) -> Tag | None:
        with self._lock.read_locked():
            return self._entries.get(identity)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)

    def aggregate(self) -> dict[Tag, int]:
        """Count entries per tag across every known action and status.

        Cells with no entries are reported as zero so a gauge can drop back
        to zero once the last rule of a kind is removed.
        """
        with self._lock.read_locked():
            totals = Counter(self._entries.values())

        return {
            Tag(action, status): totals[Tag(action, status)]
            for action in KNOWN_ENFORCEMENT_ACTIONS
            for status in ALL_STATUSES
        }

    def report(self, reporter: MetricsReporter) -> None:
        """Push the current aggregate to a metrics reporter.

        A failed cell is logged and does not prevent the remaining cells
        from being exported.
        """
        for tag, count in self.aggregate().items():
            try:
                reporter.report(tag, count)
            except Exception as e:
                logger.error(
                    "Failed to report total constraints",
                    extra={
                        "enforcement_action": tag.enforcement_action.value,
                        "status": tag.status.value,
                        "error": str(e),
                    },
                )
