"""
Chat platform gateways

Each gateway handles platform-specific communication:
- Feishu / Lark: WebSocket long connection (lark-oapi) + Open API REST
"""

from .base import ChatGateway
from .feishu import FeishuGateway

__all__ = ["ChatGateway", "FeishuGateway"]
