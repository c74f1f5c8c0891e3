from __future__ import annotations

import time
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

BridgeStateName = Literal["idle", "connecting", "connected", "error"]
Direction = Literal["to_assistant", "to_chat"]

STATE_IDLE: BridgeStateName = "idle"
STATE_CONNECTING: BridgeStateName = "connecting"
STATE_CONNECTED: BridgeStateName = "connected"
STATE_ERROR: BridgeStateName = "error"


class PendingMessage(BaseModel):
    """One unit of retryable delivery work."""

    direction: Direction
    # Chat id for to_assistant/to_chat; None for a reply whose chat is not yet known.
    target: Optional[str] = None
    text: str
    session_id: Optional[str] = None
    retry_count: int = 0
    queued_at: float = Field(default_factory=time.time)

    model_config = ConfigDict(extra="forbid")


class BridgeStatus(BaseModel):
    status: BridgeStateName
    error: Optional[str] = None
    gateway_connected: bool = False
    assistant_connected: bool = False
    queue_size: int = 0
    session_count: int = 0
    connection_started_at: Optional[str] = None
    last_error_at: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class StatusChange(BaseModel):
    old_status: BridgeStateName
    new_status: BridgeStateName
    error: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class BridgeMessageEvent(BaseModel):
    direction: Direction
    chat_id: str
    text: str
    session_id: Optional[str] = None
    ts: float = Field(default_factory=time.time)

    model_config = ConfigDict(extra="forbid")


class BridgeErrorEvent(BaseModel):
    source: str
    error: str

    model_config = ConfigDict(extra="forbid")
