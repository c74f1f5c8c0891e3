from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def epoch_to_iso(ts: Optional[float]) -> Optional[str]:
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except Exception:
        return None


def deadline_after(seconds: float) -> float:
    return time.monotonic() + max(0.0, float(seconds))


def remaining(deadline: float) -> float:
    return max(0.0, deadline - time.monotonic())
