from __future__ import annotations

from .bridge import (
    STATE_CONNECTED,
    STATE_CONNECTING,
    STATE_ERROR,
    STATE_IDLE,
    BridgeErrorEvent,
    BridgeMessageEvent,
    BridgeStateName,
    BridgeStatus,
    Direction,
    PendingMessage,
    StatusChange,
)
from .chat import ChatMessage
from .config import AssistantConfig, BridgeConfig, BridgeTuning, FeishuConfig, WebConfig, missing_fields

__all__ = [
    "AssistantConfig",
    "BridgeConfig",
    "BridgeErrorEvent",
    "BridgeMessageEvent",
    "BridgeStateName",
    "BridgeStatus",
    "BridgeTuning",
    "ChatMessage",
    "Direction",
    "FeishuConfig",
    "PendingMessage",
    "STATE_CONNECTED",
    "STATE_CONNECTING",
    "STATE_ERROR",
    "STATE_IDLE",
    "StatusChange",
    "WebConfig",
    "missing_fields",
]
