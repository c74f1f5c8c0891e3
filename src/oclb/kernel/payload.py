"""Assistant reply payloads.

Replies reach the bridge in several shapes (a bare string, `{"text": ...}`,
`{"content": ...}`, or `{"parts": [...]}` as returned by the message endpoint).
`parse_payload` classifies a raw value once; each variant knows how to produce
its text, and anything unrecognised becomes `EmptyPayload`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

_SESSION_KEYS = ("sessionId", "sessionID", "session_id")


@dataclass(frozen=True)
class TextPayload:
    value: str
    session_id: Optional[str] = None

    def text(self) -> str:
        return self.value


@dataclass(frozen=True)
class ContentPayload:
    content: str
    session_id: Optional[str] = None

    def text(self) -> str:
        return self.content


@dataclass(frozen=True)
class PartsPayload:
    parts: List[Dict[str, Any]] = field(default_factory=list)
    session_id: Optional[str] = None

    def text(self) -> str:
        chunks: List[str] = []
        for part in self.parts:
            if not isinstance(part, dict) or part.get("type") != "text":
                continue
            t = part.get("text")
            if isinstance(t, str) and t:
                chunks.append(t)
        return "".join(chunks)


@dataclass(frozen=True)
class EmptyPayload:
    session_id: Optional[str] = None

    def text(self) -> str:
        return ""


AssistantPayload = Union[TextPayload, ContentPayload, PartsPayload, EmptyPayload]


def _session_id_of(raw: Dict[str, Any]) -> Optional[str]:
    for k in _SESSION_KEYS:
        v = raw.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    info = raw.get("info")
    if isinstance(info, dict):
        for k in _SESSION_KEYS:
            v = info.get(k)
            if isinstance(v, str) and v.strip():
                return v.strip()
    return None


def parse_payload(raw: Any) -> AssistantPayload:
    if isinstance(raw, str):
        return TextPayload(raw)
    if not isinstance(raw, dict):
        return EmptyPayload()

    sid = _session_id_of(raw)
    content = raw.get("content")
    if isinstance(content, str) and content:
        return ContentPayload(content, session_id=sid)
    text = raw.get("text")
    if isinstance(text, str) and text:
        return TextPayload(text, session_id=sid)
    parts = raw.get("parts")
    if isinstance(parts, list):
        return PartsPayload([p for p in parts if isinstance(p, dict)], session_id=sid)
    return EmptyPayload(session_id=sid)


def has_reply(raw: Any) -> bool:
    """True when a message-endpoint response body carries a reply turn."""
    return isinstance(raw, dict) and (isinstance(raw.get("parts"), list) or bool(raw.get("text")))
