from __future__ import annotations

from . import assistant, sse

__all__ = ["assistant", "sse"]
