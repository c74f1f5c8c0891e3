from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

Handler = Callable[..., None]
Disposer = Callable[[], None]


class EventHub:
    """Named-event subscription surface.

    `subscribe()` returns a disposer; calling it twice is harmless. Handlers run
    synchronously on the emitting thread, and a handler that raises is logged
    without affecting the others.
    """

    def __init__(self, *, events: Optional[Iterable[str]] = None, logger: Optional[logging.Logger] = None) -> None:
        self._allowed = frozenset(events) if events is not None else None
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger("oclb.events")

    def _check(self, event: str) -> str:
        name = str(event or "").strip()
        if not name:
            raise ValueError("event name is required")
        if self._allowed is not None and name not in self._allowed:
            raise ValueError(f"invalid event name {name!r}; must be one of: {', '.join(sorted(self._allowed))}")
        return name

    def subscribe(self, event: str, handler: Handler) -> Disposer:
        if not callable(handler):
            raise ValueError("handler must be callable")
        name = self._check(event)
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)

        def _dispose() -> None:
            self.unsubscribe(name, handler)

        return _dispose

    def unsubscribe(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(str(event or ""))
            if not handlers:
                return
            try:
                handlers.remove(handler)
            except ValueError:
                pass

    def emit(self, event: str, *args: Any) -> int:
        with self._lock:
            handlers = list(self._handlers.get(event, ()))
        for fn in handlers:
            try:
                fn(*args)
            except Exception:
                self._logger.exception("handler for %r failed", event)
        return len(handlers)

    def handler_count(self, event: Optional[str] = None) -> int:
        with self._lock:
            if event is not None:
                return len(self._handlers.get(event, ()))
            return sum(len(v) for v in self._handlers.values())

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
