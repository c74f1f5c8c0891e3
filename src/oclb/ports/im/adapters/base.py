"""
Base class for chat platform gateways.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from ....kernel.emitter import Disposer, EventHub

GATEWAY_EVENTS = ("message", "connected", "disconnected", "error")


class ChatGateway(ABC):
    """
    Abstract base class for chat platform gateways.

    Each gateway handles:
    - Connecting to the platform with app credentials
    - Receiving messages (emitted as `message` with a ChatMessage)
    - Sending text messages
    - Reporting liveness (`connected` / `disconnected` / `error`)

    Handlers run on whatever thread the platform SDK delivers on; callers that
    need ordering must hop to their own worker.
    """

    platform: str = "unknown"

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.events = EventHub(events=GATEWAY_EVENTS, logger=logger)

    @abstractmethod
    def start(self, app_id: str, app_secret: str) -> None:
        """Connect; returns once the gateway can send and receive. Raises on failure."""

    @abstractmethod
    def stop(self) -> None:
        """Disconnect. Safe to call when not started."""

    @abstractmethod
    def send_message(self, chat_id: str, text: str) -> None:
        """Send a text message to a chat. Raises SendFailed."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    def subscribe(self, event: str, handler: Callable[..., None]) -> Disposer:
        return self.events.subscribe(event, handler)

    def unsubscribe(self, event: str, handler: Callable[..., None]) -> None:
        self.events.unsubscribe(event, handler)

    def summarize(self, text: str, max_chars: int = 4000, max_lines: int = 200) -> str:
        """
        Fit text for chat display.

        - Normalize newlines
        - Collapse multiple blank lines
        - Limit lines and characters
        """
        if not text:
            return ""

        t = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", "  ")
        lines = [ln.rstrip() for ln in t.split("\n")]

        while lines and not lines[0].strip():
            lines.pop(0)
        while lines and not lines[-1].strip():
            lines.pop()

        kept = []
        empty_count = 0
        for ln in lines:
            if not ln.strip():
                empty_count += 1
                if empty_count <= 1:
                    kept.append("")
            else:
                empty_count = 0
                kept.append(ln)

        if len(kept) > max_lines:
            kept = kept[:max_lines] + ["…"]
        out = "\n".join(kept).strip()

        if len(out) > max_chars:
            out = out[: max(0, max_chars - 1)] + "…"

        return out
