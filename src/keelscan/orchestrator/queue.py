"""Priority queue of admitted scan jobs waiting for a slot.

Entries are ordered by priority (higher first) and then by a strictly
increasing sequence number, which makes equal-priority jobs FIFO.
"""

import heapq
import itertools
from typing import Optional

from keelscan.core.exceptions import QueueOverflowError
from keelscan.core.models import QueueEntry


NOT_QUEUED = -1


class ScanPriorityQueue:
    """Binary heap of QueueEntry objects with removal and ranking.

    Not thread-safe: the scheduler is its only user and mutates it from
    the event loop thread.

    Attributes:
        max_length: Optional bound on queued entries
    """

    def __init__(self, max_length: Optional[int] = None) -> None:
        self.max_length = max_length
        self._heap: list[QueueEntry] = []
        self._entries: dict[str, QueueEntry] = {}
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def push(self, request_id: str, priority: int = 0) -> QueueEntry:
        """Add a job to the queue.

        Args:
            request_id: Job identifier
            priority: Higher values are scheduled first

        Returns:
            The created QueueEntry

        Raises:
            QueueOverflowError: If the queue is at max_length
            ValueError: If the job is already queued
        """
        if request_id in self._entries:
            raise ValueError(f"Job {request_id} is already queued")

        if self.max_length is not None and len(self._heap) >= self.max_length:
            raise QueueOverflowError(
                f"Scan queue is full ({self.max_length} jobs waiting)"
            )

        entry = QueueEntry(
            priority=priority,
            sequence=next(self._sequence),
            request_id=request_id,
        )
        heapq.heappush(self._heap, entry)
        self._entries[request_id] = entry
        return entry

    def pop(self) -> Optional[QueueEntry]:
        """Remove and return the next entry to schedule, None if empty."""
        if not self._heap:
            return None
        entry = heapq.heappop(self._heap)
        del self._entries[entry.request_id]
        return entry

    def peek(self) -> Optional[QueueEntry]:
        return self._heap[0] if self._heap else None

    def remove(self, request_id: str) -> bool:
        """Remove a queued job.

        Returns:
            True if the job was queued and is now removed
        """
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        self._heap.remove(entry)
        heapq.heapify(self._heap)
        return True

    def ordered(self) -> list[QueueEntry]:
        """Entries in the order they would be scheduled."""
        return sorted(self._heap)

    def position(self, request_id: str) -> int:
        """1-based rank of a queued job, NOT_QUEUED if absent."""
        entry = self._entries.get(request_id)
        if entry is None:
            return NOT_QUEUED
        # Rank = entries that sort ahead of this one, plus one
        return sum(1 for other in self._heap if other < entry) + 1

    def clear(self) -> list[QueueEntry]:
        """Drop every entry and return them in scheduling order."""
        entries = self.ordered()
        self._heap.clear()
        self._entries.clear()
        return entries
