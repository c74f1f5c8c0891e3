from __future__ import annotations

import hashlib
from collections import OrderedDict
from typing import Hashable

DEFAULT_SEEN_CAPACITY = 1000
DEFAULT_FINGERPRINT_CAPACITY = 200


class SeenWindow:
    """Bounded recent-history set; the oldest key is evicted once full.

    Suppresses redelivery, not a full idempotence guarantee.
    """

    def __init__(self, capacity: int = DEFAULT_SEEN_CAPACITY) -> None:
        if int(capacity) <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self._keys: "OrderedDict[Hashable, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def add(self, key: Hashable) -> bool:
        """Record `key`. Returns False if it was already present."""
        if key in self._keys:
            return False
        self._keys[key] = None
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)
        return True

    def clear(self) -> None:
        self._keys.clear()


def fingerprint(text: str) -> str:
    """Content fingerprint for outbound replies (whitespace-normalized SHA-1)."""
    norm = " ".join(str(text or "").split())
    return hashlib.sha1(norm.encode("utf-8", errors="replace")).hexdigest()
