from __future__ import annotations

import json
import logging
import sys
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, TextIO


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys copied from `logger.*(..., extra={...})` into the JSONL payload.
_CORRELATION_KEYS = ("op", "chat_id", "session_id", "message_id", "direction", "pid", "status")


def _utc_ts_iso(ts: float) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except Exception:
        return ""


def record_to_dict(record: logging.LogRecord, *, component: str = "oclb") -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "ts": _utc_ts_iso(getattr(record, "created", 0.0) or 0.0),
        "level": str(getattr(record, "levelname", "") or ""),
        "logger": str(getattr(record, "name", "") or ""),
        "component": component,
        "msg": record.getMessage(),
    }
    for k in _CORRELATION_KEYS:
        v = getattr(record, k, None)
        if v is None:
            continue
        sv = str(v).strip()
        if sv:
            payload[k] = sv
    return payload


class JsonlFormatter(logging.Formatter):
    """JSONL formatter: one object per record, stable small field set."""

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "oclb"

    def format(self, record: logging.LogRecord) -> str:
        payload = record_to_dict(record, component=self._component)

        if record.exc_info:
            try:
                payload["exc"] = self.formatException(record.exc_info)
            except Exception:
                payload["exc"] = "exception"

        try:
            return json.dumps(payload, ensure_ascii=False)
        except Exception:
            return '{"component":"%s","level":"%s","msg":"(log serialization failed)"}' % (
                self._component,
                payload.get("level", "INFO"),
            )


class LogRing(logging.Handler):
    """Keeps the most recent records in memory and fans new ones out to listeners.

    Backs the control plane's `/api/logs` and `/api/logs/stream`.
    """

    def __init__(self, capacity: int = 1000, *, component: str = "oclb") -> None:
        super().__init__()
        self._component = component
        self._records: Deque[Dict[str, Any]] = deque(maxlen=max(1, int(capacity)))
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []
        self._ring_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = record_to_dict(record, component=self._component)
        except Exception:
            return
        with self._ring_lock:
            self._records.append(entry)
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(entry)
            except Exception:
                pass

    def tail(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._ring_lock:
            items = list(self._records)
        n = max(0, int(limit))
        return items[-n:] if n else []

    def add_listener(self, fn: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        with self._ring_lock:
            self._listeners.append(fn)

        def _remove() -> None:
            with self._ring_lock:
                try:
                    self._listeners.remove(fn)
                except ValueError:
                    pass

        return _remove


def _parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    return int(getattr(logging, s, default))


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    - Uses a single StreamHandler with JSONL formatter.
    - `force=True` clears existing handlers.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    root = logging.getLogger()
    root.setLevel(_parse_level(level))

    if force:
        for h in list(root.handlers):
            try:
                root.removeHandler(h)
            except Exception:
                pass

    for h in list(root.handlers):
        if isinstance(h, logging.StreamHandler) and isinstance(getattr(h, "formatter", None), JsonlFormatter):
            h.setLevel(_parse_level(level))
            return

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(_parse_level(level))
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)


def attach_log_ring(ring: LogRing) -> None:
    root = logging.getLogger()
    if ring not in root.handlers:
        root.addHandler(ring)
