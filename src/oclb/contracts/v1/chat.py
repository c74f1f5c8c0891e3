from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ChatMessage(BaseModel):
    """Inbound chat message as normalized by a chat gateway."""

    chat_id: str
    text: str = ""
    user_id: str = ""
    message_id: str = ""
    is_mentioned: bool = False
    chat_type: str = ""

    model_config = ConfigDict(extra="ignore")
