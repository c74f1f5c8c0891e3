"""Single-thread work queue.

Everything submitted to one `SerialExecutor` runs in submission order on its
worker thread, which makes that thread the only writer of whatever state the
submitted callables touch.
"""
from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger("oclb.dispatch")

# (future, fn, args, kwargs, log_errors)
_Job = Tuple[Future, Callable[..., Any], tuple, dict, bool]


class SerialExecutor:
    def __init__(self, name: str) -> None:
        self.name = name
        self._q: "queue.Queue[Optional[_Job]]" = queue.Queue()
        self._cond = threading.Condition()
        self._pending = 0
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def start(self) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError(f"executor {self.name} is closed")
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._loop, name=f"oclb-{self.name}", daemon=True)
            self._thread.start()

    def in_worker(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def _enqueue(self, fn: Callable[..., Any], args: tuple, kwargs: dict, log_errors: bool) -> Future:
        fut: Future = Future()
        with self._cond:
            if self._closed:
                fut.set_exception(RuntimeError(f"executor {self.name} is closed"))
                return fut
            self._pending += 1
        self.start()
        self._q.put((fut, fn, args, kwargs, log_errors))
        return fut

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Queue `fn`; the caller owns the returned future and its exception."""
        return self._enqueue(fn, args, kwargs, False)

    def post(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Queue `fn` fire-and-forget; an exception it raises is logged."""
        self._enqueue(fn, args, kwargs, True)

    def call(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> Any:
        """Run `fn` on the worker and wait for its result (inline when already on it)."""
        if self.in_worker():
            return fn(*args, **kwargs)
        return self.submit(fn, *args, **kwargs).result(timeout=timeout)

    def join_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued or running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def shutdown(self, timeout: float = 2.0) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            th = self._thread
        self._q.put(None)
        if th is not None and th is not threading.current_thread():
            th.join(timeout=timeout)

    def _loop(self) -> None:
        while True:
            job = self._q.get()
            if job is None:
                return
            fut, fn, args, kwargs, log_errors = job
            try:
                if fut.set_running_or_notify_cancel():
                    try:
                        fut.set_result(fn(*args, **kwargs))
                    except Exception as e:
                        fut.set_exception(e)
                        if log_errors:
                            logger.exception("[%s] job %s failed", self.name, getattr(fn, "__name__", fn))
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()
