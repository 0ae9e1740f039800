"""
Bounded window of already-seen message ids.
"""

from __future__ import annotations

from collections import OrderedDict

DEFAULT_DEDUP_WINDOW = 5000


class DedupWindow:
    """
    Best-effort duplicate filter with oldest-first eviction.

    Not durable: a restart forgets every id (at-least-once delivery).
    """

    def __init__(self, capacity: int = DEFAULT_DEDUP_WINDOW):
        self.capacity = max(capacity, 1)
        self._ids: OrderedDict[str, None] = OrderedDict()

    def add(self, message_id: str) -> bool:
        """Record ``message_id``; return False if it was already present."""
        if message_id in self._ids:
            return False

        self._ids[message_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return True

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
