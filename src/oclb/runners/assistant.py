"""Supervisor and protocol client for the locally spawned assistant.

The assistant (`opencode serve` by default) is started in its own process group
and spoken to over HTTP:

- GET  <health_path>            liveness
- POST /session                 create a conversation
- POST /session/{id}/message    send a turn; the reply may come back inline
- GET  /event                   server-sent events

Lifecycle and stream problems that happen in the background are reported as
events (`disconnected`, `error`), never raised into unrelated calls.
"""
from __future__ import annotations

import http.client
import logging
import os
import signal
import socket
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import requests

from ..contracts.v1 import AssistantConfig
from ..kernel.emitter import Disposer, EventHub
from ..kernel.errors import (
    AlreadyRunning,
    BridgeError,
    ProcessCrashed,
    SendFailed,
    SessionCreateFailed,
    SpawnFailed,
    StartupTimeout,
    StreamDisconnected,
)
from ..kernel.payload import has_reply
from ..util.time import deadline_after, remaining
from .sse import SSEFrame, SSEParser

logger = logging.getLogger("oclb.assistant")

STARTUP_CHECK_INTERVAL_S = 0.5
OUTPUT_TAIL_LINES = 50
STREAM_READ_SIZE = 4096
STREAM_CONNECT_TIMEOUT_S = 10.0
CONTROL_TIMEOUT_S = 10.0


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


def build_command(cfg: AssistantConfig) -> List[str]:
    cmd = [str(x).replace("{host}", cfg.host).replace("{port}", str(cfg.port)) for x in cfg.command if str(x).strip()]
    if not cmd:
        raise SpawnFailed("assistant command is empty")
    return cmd


@dataclass
class ProcessHandle:
    proc: subprocess.Popen
    work_dir: Path
    host: str
    port: int
    output: Deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))

    @property
    def pid(self) -> int:
        return int(getattr(self.proc, "pid", 0) or 0)

    @property
    def alive(self) -> bool:
        return self.proc.poll() is None

    def output_tail(self, max_lines: int = 20) -> str:
        lines = list(self.output)
        return "\n".join(lines[-max_lines:])


class _EventStream:
    """A single GET /event connection.

    Holds its own socket reference so `close()` can unblock the reader from
    another thread.
    """

    def __init__(self, host: str, port: int, path: str = "/event") -> None:
        self.host = host
        self.port = port
        self.path = path
        self.parser = SSEParser()
        self._conn: Optional[http.client.HTTPConnection] = None
        self._sock: Optional[socket.socket] = None
        self._resp: Optional[http.client.HTTPResponse] = None
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def open(self) -> None:
        conn = http.client.HTTPConnection(self.host, self.port, timeout=STREAM_CONNECT_TIMEOUT_S)
        try:
            conn.connect()
            self._sock = conn.sock
            conn.request("GET", self.path, headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"})
            resp = conn.getresponse()
        except (OSError, http.client.HTTPException) as e:
            conn.close()
            raise StreamDisconnected(f"event stream connect failed: {e}") from e
        if resp.status != 200:
            body = b""
            try:
                body = resp.read(300)
            except Exception:
                pass
            conn.close()
            raise StreamDisconnected(
                f"event stream HTTP {resp.status}",
                details={"status": resp.status, "body": body.decode("utf-8", errors="replace")},
            )
        if self._sock is not None:
            self._sock.settimeout(None)
        self._conn = conn
        self._resp = resp

    def read(self) -> bytes:
        if self._resp is None:
            return b""
        return self._resp.read1(STREAM_READ_SIZE)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if self._conn is not None:
            try:
                self._conn.close()
            except Exception:
                pass
        if self._resp is not None:
            try:
                self._resp.close()
            except Exception:
                pass


class AssistantClient:
    """Owns one assistant process and its HTTP / event-stream protocol."""

    def __init__(self, *, http: Optional[requests.Session] = None) -> None:
        self.events = EventHub(logger=logger)
        if http is None:
            http = requests.Session()
            # The assistant is always local; proxy settings must not apply.
            http.trust_env = False
        self._http = http
        self._lock = threading.RLock()
        self._config: Optional[AssistantConfig] = None
        self._handle: Optional[ProcessHandle] = None
        self._stream: Optional[_EventStream] = None
        self._connected = False
        self._stop_evt = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event: str, handler: Callable[..., None]) -> Disposer:
        return self.events.subscribe(event, handler)

    def unsubscribe(self, event: str, handler: Callable[..., None]) -> None:
        self.events.unsubscribe(event, handler)

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    @property
    def config(self) -> Optional[AssistantConfig]:
        return self._config

    @property
    def handle(self) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handle

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: Union[AssistantConfig, Dict[str, Any]]) -> ProcessHandle:
        cfg = config if isinstance(config, AssistantConfig) else AssistantConfig.model_validate(config)
        work_dir = Path(cfg.work_dir or ".").expanduser()
        argv = build_command(cfg)

        with self._lock:
            if self._handle is not None and self._handle.alive:
                raise AlreadyRunning(f"assistant already running (pid={self._handle.pid})")
            self._config = cfg
            self._stop_evt = threading.Event()
            stop_evt = self._stop_evt

        logger.info("spawning assistant: %s (cwd=%s)", " ".join(argv), work_dir)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(work_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=os.environ.copy(),
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailed(f"failed to start assistant: {e}", details={"argv": argv}) from e

        handle = ProcessHandle(proc=proc, work_dir=work_dir, host=cfg.host, port=cfg.port)
        with self._lock:
            self._handle = handle
        self._spawn_thread(self._drain_output, handle, name="output")

        try:
            self._wait_for_health(handle, cfg, stop_evt)
        except BridgeError:
            self._terminate(handle, cfg.stop_grace)
            with self._lock:
                if self._handle is handle:
                    self._handle = None
            raise

        with self._lock:
            self._connected = True
        logger.info("assistant healthy", extra={"pid": handle.pid})
        self._spawn_thread(self._health_loop, handle, cfg, stop_evt, name="health")
        self._spawn_thread(self._exit_watch, handle, stop_evt, name="exit")
        return handle

    def stop(self) -> None:
        with self._lock:
            handle = self._handle
            stream = self._stream
            self._handle = None
            self._stream = None
            self._connected = False
            self._stop_evt.set()
            threads = list(self._threads)
            self._threads = []
            grace = self._config.stop_grace if self._config is not None else 5.0

        if stream is not None:
            stream.close()
        if handle is not None:
            logger.info("stopping assistant", extra={"pid": handle.pid})
            self._terminate(handle, grace)

        me = threading.current_thread()
        for th in threads:
            if th is not me:
                th.join(timeout=1.0)

    def _spawn_thread(self, target: Callable[..., None], *args: Any, name: str) -> threading.Thread:
        th = threading.Thread(target=target, args=args, name=f"oclb-assistant-{name}", daemon=True)
        with self._lock:
            self._threads.append(th)
        th.start()
        return th

    def _terminate(self, handle: ProcessHandle, grace: float) -> None:
        """SIGTERM the process group, then SIGKILL after the grace window."""
        if handle.alive:
            _best_effort_killpg(handle.pid, signal.SIGTERM)
            try:
                handle.proc.wait(timeout=max(0.0, float(grace)))
            except subprocess.TimeoutExpired:
                logger.warning("assistant ignored SIGTERM; killing", extra={"pid": handle.pid})
                _best_effort_killpg(handle.pid, signal.SIGKILL)
                try:
                    handle.proc.wait(timeout=2.0)
                except subprocess.TimeoutExpired:
                    logger.error("assistant did not exit after SIGKILL", extra={"pid": handle.pid})
        else:
            # Children may outlive the leader.
            _best_effort_killpg(handle.pid, signal.SIGKILL)
        if handle.proc.stdout is not None:
            try:
                handle.proc.stdout.close()
            except Exception:
                pass

    def _drain_output(self, handle: ProcessHandle) -> None:
        out = handle.proc.stdout
        if out is None:
            return
        try:
            for raw in iter(out.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    handle.output.append(line)
                    logger.debug("[assistant] %s", line)
        except (OSError, ValueError):
            pass

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _url(self, path: str, cfg: Optional[AssistantConfig] = None) -> str:
        c = cfg or self._config
        if c is None:
            raise BridgeError("assistant not started")
        return c.base_url + (path if path.startswith("/") else "/" + path)

    def check_health(self, *, timeout: float = CONTROL_TIMEOUT_S, cfg: Optional[AssistantConfig] = None) -> bool:
        c = cfg or self._config
        if c is None:
            return False
        try:
            resp = self._http.get(self._url(c.health_path, c), timeout=timeout)
        except requests.RequestException:
            return False
        if not (200 <= resp.status_code < 300):
            return False
        try:
            body = resp.json()
        except ValueError:
            return True
        if isinstance(body, dict) and body.get("healthy") is False:
            return False
        return True

    def _wait_for_health(self, handle: ProcessHandle, cfg: AssistantConfig, stop_evt: threading.Event) -> None:
        deadline = deadline_after(cfg.startup_timeout)
        while True:
            if stop_evt.is_set():
                raise ProcessCrashed("assistant stopped during startup")
            if not handle.alive:
                code = handle.proc.poll()
                raise ProcessCrashed(
                    f"assistant exited during startup with code {code}",
                    details={"exit_code": code, "output": handle.output_tail()},
                )
            if self.check_health(timeout=STARTUP_CHECK_INTERVAL_S, cfg=cfg):
                return
            left = remaining(deadline)
            if left <= 0:
                raise StartupTimeout(
                    f"assistant not healthy after {cfg.startup_timeout:g}s",
                    details={"output": handle.output_tail()},
                )
            stop_evt.wait(min(STARTUP_CHECK_INTERVAL_S, left))

    def _health_loop(self, handle: ProcessHandle, cfg: AssistantConfig, stop_evt: threading.Event) -> None:
        while not stop_evt.wait(cfg.health_interval):
            if self.check_health(timeout=min(cfg.health_interval, CONTROL_TIMEOUT_S), cfg=cfg):
                continue
            if stop_evt.is_set():
                return
            self._mark_disconnected("health check failed")
            return

    def _exit_watch(self, handle: ProcessHandle, stop_evt: threading.Event) -> None:
        code = handle.proc.wait()
        if stop_evt.is_set():
            return
        logger.warning("assistant exited unexpectedly with code %s", code, extra={"pid": handle.pid})
        if code != 0:
            self.events.emit(
                "error",
                ProcessCrashed(
                    f"assistant exited with code {code}",
                    details={"exit_code": code, "output": handle.output_tail()},
                ),
            )
        self._mark_disconnected(f"process exited ({code})")

    def _mark_disconnected(self, reason: str) -> bool:
        """Flip to disconnected and emit once; later calls are no-ops until the next start."""
        with self._lock:
            if not self._connected:
                return False
            self._connected = False
        logger.warning("assistant disconnected: %s", reason)
        self.events.emit("disconnected", {"reason": reason})
        return True

    # ------------------------------------------------------------------
    # Sessions and messages
    # ------------------------------------------------------------------

    def create_session(self) -> str:
        cfg = self._config
        if cfg is None:
            raise SessionCreateFailed("assistant not started")
        try:
            resp = self._http.post(self._url("/session", cfg), json={}, timeout=CONTROL_TIMEOUT_S)
        except requests.RequestException as e:
            raise SessionCreateFailed(f"create session failed: {e}") from e
        if not (200 <= resp.status_code < 300):
            raise SessionCreateFailed(f"create session HTTP {resp.status_code}: {resp.text[:300]}")
        try:
            body = resp.json()
        except ValueError as e:
            raise SessionCreateFailed(f"create session returned non-JSON: {resp.text[:300]}") from e
        sid = ""
        if isinstance(body, dict):
            sid = str(body.get("sessionId") or body.get("id") or "").strip()
        if not sid:
            raise SessionCreateFailed("no session id in response", details={"body": body})
        logger.info("created assistant session", extra={"session_id": sid})
        return sid

    def send_message(self, session_id: str, text: str) -> Optional[Dict[str, Any]]:
        """Post one text turn. Returns the inline reply body, if any (also emitted as `message`)."""
        cfg = self._config
        if cfg is None:
            raise SendFailed("assistant not started")
        sid = str(session_id or "").strip()
        if not sid:
            raise SendFailed("session id is required")
        body = {"parts": [{"type": "text", "text": str(text)}]}
        try:
            resp = self._http.post(self._url(f"/session/{sid}/message", cfg), json=body, timeout=cfg.request_timeout)
        except requests.RequestException as e:
            raise SendFailed(f"send to session {sid} failed: {e}") from e
        if not (200 <= resp.status_code < 300):
            raise SendFailed(
                f"send to session {sid}: HTTP {resp.status_code}",
                details={"status": resp.status_code, "body": resp.text[:300]},
            )

        try:
            reply = resp.json()
        except ValueError:
            return None
        if not has_reply(reply):
            return None
        if not any(k in reply for k in ("sessionId", "sessionID", "session_id")):
            info = reply.get("info")
            if not (isinstance(info, dict) and info.get("sessionID")):
                reply = dict(reply)
                reply["sessionId"] = sid
        self.events.emit("message", reply)
        return reply

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    @property
    def stream_open(self) -> bool:
        with self._lock:
            return self._stream is not None

    def open_event_stream(self) -> None:
        with self._lock:
            if self._stream is not None:
                return
            cfg = self._config
        if cfg is None:
            raise StreamDisconnected("assistant not started")

        stream = _EventStream(cfg.host, cfg.port)
        stream.open()
        with self._lock:
            if self._stream is not None:
                stream.close()
                return
            self._stream = stream
        logger.info("event stream opened")
        self._spawn_thread(self._read_stream, stream, name="sse")

    def _read_stream(self, stream: _EventStream) -> None:
        reason = "eof"
        try:
            while True:
                chunk = stream.read()
                if not chunk:
                    break
                for frame in stream.parser.feed(chunk):
                    self._dispatch_frame(frame)
        except (OSError, ValueError, http.client.HTTPException) as e:
            reason = f"{type(e).__name__}: {e}"
        finally:
            self._on_stream_closed(stream, reason)

    def _on_stream_closed(self, stream: _EventStream, reason: str) -> None:
        deliberate = stream.closed
        stream.close()
        with self._lock:
            if self._stream is stream:
                self._stream = None
        if deliberate:
            return
        logger.warning("event stream closed: %s", reason)
        self._mark_disconnected(f"event stream closed ({reason})")

    def _dispatch_frame(self, frame: SSEFrame) -> None:
        payload = frame.payload()
        name = frame.event
        if name == "disconnected":
            self._mark_disconnected("assistant reported disconnected")
        elif name == "error":
            msg = payload.get("message") if isinstance(payload, dict) else payload
            self.events.emit("error", BridgeError(str(msg or "unknown assistant error"), details={"payload": payload}))
        else:
            # connected, message, and any future event names pass through as-is.
            self.events.emit(name, payload)

    def state(self) -> Dict[str, Any]:
        with self._lock:
            handle = self._handle
            return {
                "connected": self._connected,
                "pid": handle.pid if handle is not None else None,
                "process_running": bool(handle is not None and handle.alive),
                "stream_open": self._stream is not None,
            }
