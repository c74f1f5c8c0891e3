"""Error taxonomy for the bridge and its leaf components.

Synchronous failures are raised from the call that triggered them. Asynchronous
liveness losses are never raised; they are reported through events, and the
exception instances below are used as event payloads.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BridgeError(Exception):
    code = "bridge_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ConfigInvalid(BridgeError):
    code = "config_invalid"


class AlreadyRunning(BridgeError):
    code = "already_running"


class PortInUse(BridgeError):
    code = "port_in_use"


class SpawnFailed(BridgeError):
    code = "spawn_failed"


class StartupTimeout(BridgeError):
    code = "startup_timeout"


class SessionCreateFailed(BridgeError):
    code = "session_create_failed"


class SendFailed(BridgeError):
    code = "send_failed"


class StreamDisconnected(BridgeError):
    code = "stream_disconnected"


class ProcessCrashed(BridgeError):
    code = "process_crashed"


def describe(exc: BaseException) -> str:
    if isinstance(exc, BridgeError):
        return f"{exc.code}: {exc.message}"
    return f"{type(exc).__name__}: {exc}"
