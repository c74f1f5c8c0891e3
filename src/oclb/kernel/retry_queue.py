"""Bounded FIFO of messages awaiting another delivery attempt.

Lossy under pressure: pushing into a full queue drops the oldest entry.
"""
from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional

from ..contracts.v1 import PendingMessage

DEFAULT_QUEUE_CAPACITY = 100


class RetryQueue:
    def __init__(self, capacity: int = DEFAULT_QUEUE_CAPACITY) -> None:
        if int(capacity) <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self._items: Deque[PendingMessage] = deque()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def push(self, msg: PendingMessage) -> Optional[PendingMessage]:
        """Append `msg`; returns the entry evicted to make room, if any."""
        evicted: Optional[PendingMessage] = None
        if len(self._items) >= self.capacity:
            evicted = self._items.popleft()
            self.dropped += 1
        self._items.append(msg)
        return evicted

    def take_all(self) -> List[PendingMessage]:
        items = list(self._items)
        self._items.clear()
        return items

    def peek_all(self) -> List[PendingMessage]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()
