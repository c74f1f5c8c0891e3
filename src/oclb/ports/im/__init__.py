"""
oclb chat bridge port

Connects a chat platform (Feishu / Lark) to the local assistant.

Architecture:
- Inbound: chat message -> BridgeEngine -> assistant session
- Outbound: assistant reply -> BridgeEngine -> originating chat
- Failed deliveries are retried from a bounded queue

Usage:
    oclb run            # control plane + bridge in the foreground
    oclb start / stop   # same, daemonized
"""

from .bridge import BridgeEngine, build_engine

__all__ = ["BridgeEngine", "build_engine"]
