"""
Bridge engine - routes messages between a chat gateway and the assistant.

Handles:
- Inbound: chat message -> dedup -> chat's session (created lazily) -> assistant
- Outbound: assistant reply -> text extraction -> dedup -> originating chat
- Status: idle -> connecting -> connected, connected -> error on liveness loss
- Retry: failed deliveries wait in a bounded queue drained on a timer

Threading:
- "events" worker: the only writer of engine state; every leaf callback and
  drain tick is posted here.
- "to-assistant" / "to-chat" workers: blocking sends, one lane per direction.
  Outcomes are posted back to "events".
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Union

from ...contracts.v1 import (
    STATE_CONNECTED,
    STATE_CONNECTING,
    STATE_ERROR,
    STATE_IDLE,
    BridgeConfig,
    BridgeErrorEvent,
    BridgeMessageEvent,
    BridgeStateName,
    BridgeStatus,
    BridgeTuning,
    ChatMessage,
    Direction,
    PendingMessage,
    StatusChange,
    missing_fields,
)
from ...kernel.dedup import SeenWindow, fingerprint
from ...kernel.dispatch import SerialExecutor
from ...kernel.emitter import Disposer, EventHub
from ...kernel.errors import AlreadyRunning, BridgeError, ConfigInvalid, PortInUse, describe
from ...kernel.payload import parse_payload
from ...kernel.retry_queue import RetryQueue
from ...kernel.settings import parse_config
from ...runners.assistant import AssistantClient
from ...util.net import port_in_use
from ...util.time import deadline_after, epoch_to_iso, remaining
from .adapters.base import ChatGateway
from .adapters.feishu import FeishuGateway

logger = logging.getLogger("oclb.bridge")

BRIDGE_EVENTS = ("message", "statusChange", "error")

_LOG_TEXT_CHARS = 80


def _clip(text: str) -> str:
    t = " ".join(str(text or "").split())
    return t if len(t) <= _LOG_TEXT_CHARS else t[: _LOG_TEXT_CHARS - 1] + "…"


class StartCancelled(BridgeError):
    code = "start_cancelled"


class BridgeEngine:
    """
    Composes a ChatGateway and an AssistantClient.

    Constructed explicitly with both leaves; nothing here is process-global.
    """

    def __init__(
        self,
        gateway: ChatGateway,
        assistant: AssistantClient,
        *,
        port_check: Callable[[str, int], bool] = port_in_use,
    ) -> None:
        self.gateway = gateway
        self.assistant = assistant
        self._port_check = port_check
        self.events = EventHub(events=BRIDGE_EVENTS, logger=logger)

        self._events = SerialExecutor("events")
        self._to_assistant = SerialExecutor("to-assistant")
        self._to_chat = SerialExecutor("to-chat")

        # Engine state; written on the events worker only.
        self._status: BridgeStateName = STATE_IDLE
        self._error: Optional[str] = None
        self._last_error_at: Optional[float] = None
        self._connection_started_at: Optional[float] = None
        self._gateway_connected = False
        self._assistant_connected = False
        self._tuning = BridgeTuning()
        self._sessions: "OrderedDict[str, str]" = OrderedDict()
        self._queue = RetryQueue(self._tuning.queue_capacity)
        self._seen = SeenWindow(self._tuning.seen_capacity)
        self._fingerprints = SeenWindow(self._tuning.fingerprint_capacity)
        self._run_id = 0
        self._disposers: List[Disposer] = []
        self._drain_stop: Optional[threading.Event] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Observability surface
    # ------------------------------------------------------------------

    def subscribe(self, event: str, handler: Callable[..., None]) -> Disposer:
        return self.events.subscribe(event, handler)

    on = subscribe

    def off(self, event: str, handler: Callable[..., None]) -> None:
        self.events.unsubscribe(event, handler)

    def get_status(self) -> BridgeStatus:
        return BridgeStatus(
            status=self._status,
            error=self._error,
            gateway_connected=self._gateway_connected,
            assistant_connected=self._assistant_connected,
            queue_size=len(self._queue),
            session_count=len(self._sessions),
            connection_started_at=epoch_to_iso(self._connection_started_at),
            last_error_at=epoch_to_iso(self._last_error_at),
        )

    @property
    def status(self) -> BridgeStateName:
        return self._status

    def pending_messages(self) -> List[PendingMessage]:
        return self._events.call(self._queue.peek_all)

    def sessions(self) -> Dict[str, str]:
        return self._events.call(lambda: dict(self._sessions))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: Union[BridgeConfig, Dict[str, Any]]) -> BridgeStatus:
        """
        Start both leaves and wire routing.

        Raises ConfigInvalid / AlreadyRunning / PortInUse, or whatever a leaf
        raised while starting. On failure the engine is left in `error` and the
        leaves it started are stopped again.
        """
        cfg = parse_config(config)
        missing = missing_fields(cfg)
        if missing:
            raise ConfigInvalid(
                "missing required settings: " + ", ".join(missing),
                details={"missing": missing},
            )

        run_id, prev = self._events.call(self._begin_start, cfg)
        if prev == STATE_ERROR:
            # Leftovers of the failed run may still hold the assistant port.
            self._stop_leaves(["gateway", "assistant"])
        started: List[str] = []
        try:
            host, port = cfg.assistant.host, cfg.assistant.port
            if self._port_check(host, port):
                raise PortInUse(f"assistant port {host}:{port} is already in use", details={"port": port})

            logger.info("starting feishu gateway")
            self.gateway.start(cfg.feishu.app_id, cfg.feishu.app_secret)
            started.append("gateway")
            self._check_run(run_id)

            logger.info("starting assistant (work_dir=%s)", cfg.assistant.work_dir)
            self.assistant.start(cfg.assistant)
            started.append("assistant")
            self._check_run(run_id)

            logger.info("opening assistant event stream")
            self.assistant.open_event_stream()
            self._events.call(self._finish_start, run_id)
        except Exception as e:
            logger.error("bridge start failed: %s", describe(e))
            self._events.call(self._fail_start, run_id, describe(e))
            self._stop_leaves(started)
            raise

        logger.info("bridge started")
        return self.get_status()

    def stop(self) -> None:
        """Go idle now; stop both leaves, logging (not raising) their failures."""
        logger.info("stopping bridge")
        disposers, prev = self._events.call(self._begin_stop)
        for dispose in disposers:
            dispose()
        if prev != STATE_IDLE:
            self._stop_leaves(["gateway", "assistant"])
        logger.info("bridge stopped")

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until no routing work is queued or running. Returns False on timeout."""
        deadline = deadline_after(timeout)
        lanes = (self._events, self._to_assistant, self._to_chat)
        while True:
            for lane in lanes:
                if not lane.join_idle(remaining(deadline)):
                    return False
            # Lanes post back to events before finishing, so a clean
            # events/lanes/events sweep means nothing is in flight.
            if all(lane.pending == 0 for lane in (*lanes, self._events)):
                return True
            if remaining(deadline) <= 0:
                return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.stop()
        for lane in (self._to_assistant, self._to_chat, self._events):
            lane.shutdown()

    def _check_run(self, run_id: int) -> None:
        if run_id != self._run_id:
            raise StartCancelled("start cancelled by stop()")

    def _stop_leaves(self, names: List[str]) -> None:
        threads = []
        for name in names:
            leaf = self.gateway if name == "gateway" else self.assistant
            th = threading.Thread(target=self._stop_leaf, args=(name, leaf), name=f"oclb-stop-{name}", daemon=True)
            th.start()
            threads.append(th)
        for th in threads:
            th.join(timeout=15.0)

    def _stop_leaf(self, name: str, leaf: Any) -> None:
        try:
            leaf.stop()
        except Exception as e:
            logger.error("error stopping %s: %s", name, describe(e))

    # -- events worker -------------------------------------------------

    def _begin_start(self, cfg: BridgeConfig):
        prev = self._status
        if prev in (STATE_CONNECTING, STATE_CONNECTED):
            raise AlreadyRunning(f"bridge is already {prev}")

        self._run_id += 1
        run_id = self._run_id
        self._stop_drain_timer()
        self._dispose_handlers()
        self._tuning = cfg.bridge
        self._sessions.clear()
        self._queue = RetryQueue(cfg.bridge.queue_capacity)
        self._seen = SeenWindow(cfg.bridge.seen_capacity)
        self._fingerprints = SeenWindow(cfg.bridge.fingerprint_capacity)
        self._gateway_connected = False
        self._assistant_connected = False
        self._connection_started_at = time.time()
        self._register_handlers(run_id)
        self._set_status(STATE_CONNECTING)
        return run_id, prev

    def _finish_start(self, run_id: int) -> None:
        self._check_run(run_id)
        self._gateway_connected = bool(self.gateway.is_connected)
        self._assistant_connected = bool(self.assistant.is_connected)
        if not (self._gateway_connected and self._assistant_connected):
            raise BridgeError("connection lost during startup")
        self._set_status(STATE_CONNECTED)
        self._start_drain_timer(run_id)

    def _fail_start(self, run_id: int, error: str) -> None:
        if run_id != self._run_id:
            return
        self._stop_drain_timer()
        self._dispose_handlers()
        self._gateway_connected = False
        self._assistant_connected = False
        self._set_status(STATE_ERROR, error)

    def _begin_stop(self):
        prev = self._status
        self._run_id += 1
        self._stop_drain_timer()
        disposers = self._disposers
        self._disposers = []
        self._sessions.clear()
        self._queue.clear()
        self._seen.clear()
        self._fingerprints.clear()
        self._gateway_connected = False
        self._assistant_connected = False
        self._connection_started_at = None
        self._set_status(STATE_IDLE)
        return disposers, prev

    def _dispose_handlers(self) -> None:
        disposers = self._disposers
        self._disposers = []
        for dispose in disposers:
            dispose()

    def _set_status(self, new: BridgeStateName, error: Optional[str] = None) -> None:
        old = self._status
        if new == STATE_ERROR:
            error = error or "unknown error"
            if old == new and error == self._error:
                return
            self._error = error
            self._last_error_at = time.time()
            logger.error("bridge status %s -> error: %s", old, error, extra={"status": new})
        else:
            if old == new:
                return
            self._error = None
            logger.info("bridge status %s -> %s", old, new, extra={"status": new})
        self._status = new
        self.events.emit("statusChange", StatusChange(old_status=old, new_status=new, error=self._error))

    def _recompute_status(self) -> None:
        # Promotion to connected happens only at the end of start().
        if self._status == STATE_CONNECTED and not (self._gateway_connected and self._assistant_connected):
            lost = [n for n, ok in (("feishu", self._gateway_connected), ("assistant", self._assistant_connected)) if not ok]
            self._set_status(STATE_ERROR, "connection lost: " + ", ".join(lost))

    def _live(self, run_id: int) -> bool:
        return run_id == self._run_id and self._status != STATE_IDLE

    # ------------------------------------------------------------------
    # Leaf wiring
    # ------------------------------------------------------------------

    def _register_handlers(self, run_id: int) -> None:
        post = self._events.post

        def on_gateway_message(msg: Any = None) -> None:
            post(self._route_inbound, run_id, msg)

        def on_gateway_connected(*_: Any) -> None:
            post(self._set_leaf_connected, run_id, "gateway", True)

        def on_gateway_disconnected(*_: Any) -> None:
            post(self._set_leaf_connected, run_id, "gateway", False)

        def on_gateway_error(err: Any = None) -> None:
            post(self._leaf_error, run_id, "feishu", err)

        def on_assistant_message(payload: Any = None) -> None:
            post(self._route_outbound, run_id, payload)

        def on_assistant_connected(*_: Any) -> None:
            post(self._set_leaf_connected, run_id, "assistant", True)

        def on_assistant_disconnected(*_: Any) -> None:
            post(self._set_leaf_connected, run_id, "assistant", False)

        def on_assistant_error(err: Any = None) -> None:
            post(self._leaf_error, run_id, "assistant", err)

        self._disposers = [
            self.gateway.subscribe("message", on_gateway_message),
            self.gateway.subscribe("connected", on_gateway_connected),
            self.gateway.subscribe("disconnected", on_gateway_disconnected),
            self.gateway.subscribe("error", on_gateway_error),
            self.assistant.subscribe("message", on_assistant_message),
            self.assistant.subscribe("connected", on_assistant_connected),
            self.assistant.subscribe("disconnected", on_assistant_disconnected),
            self.assistant.subscribe("error", on_assistant_error),
        ]

    def _set_leaf_connected(self, run_id: int, leaf: str, connected: bool) -> None:
        if not self._live(run_id):
            return
        if leaf == "gateway":
            self._gateway_connected = connected
        else:
            self._assistant_connected = connected
        logger.log(logging.INFO if connected else logging.WARNING, "%s %s", leaf, "connected" if connected else "disconnected")
        self._recompute_status()

    def _leaf_error(self, run_id: int, source: str, err: Any) -> None:
        if run_id != self._run_id:
            return
        text = describe(err) if isinstance(err, BaseException) else str(err or "unknown error")
        logger.error("%s error: %s", source, text)
        self.events.emit("error", BridgeErrorEvent(source=source, error=text))

    # ------------------------------------------------------------------
    # Inbound: chat -> assistant
    # ------------------------------------------------------------------

    def _route_inbound(self, run_id: int, msg: Any) -> None:
        if not self._live(run_id):
            return
        if not isinstance(msg, ChatMessage):
            msg = ChatMessage.model_validate(msg or {})
        text = msg.text.strip()
        if not msg.chat_id or not text:
            return
        if msg.message_id and not self._seen.add(msg.message_id):
            logger.debug("duplicate inbound message dropped", extra={"chat_id": msg.chat_id, "message_id": msg.message_id})
            return
        logger.info(
            "inbound: %s",
            _clip(text),
            extra={"chat_id": msg.chat_id, "message_id": msg.message_id, "direction": "to_assistant"},
        )
        self._to_assistant.post(self._deliver_to_assistant, run_id, msg.chat_id, text, None)

    def _session_for(self, chat_id: str) -> Optional[str]:
        return self._sessions.get(chat_id)

    def _remember_session(self, run_id: int, chat_id: str, session_id: str) -> str:
        """Record chat -> session; returns the winning id, or "" if the run ended."""
        if not self._live(run_id):
            return ""
        existing = self._sessions.get(chat_id)
        if existing:
            return existing
        self._sessions[chat_id] = session_id
        logger.info("session mapped", extra={"chat_id": chat_id, "session_id": session_id})
        return session_id

    def _deliver_to_assistant(self, run_id: int, chat_id: str, text: str, retry: Optional[PendingMessage]) -> None:
        # to-assistant lane
        if run_id != self._run_id:
            return
        session_id = ""
        try:
            session_id = self._events.call(self._session_for, chat_id) or ""
            if not session_id:
                session_id = self._events.call(self._remember_session, run_id, chat_id, self.assistant.create_session())
                if not session_id:
                    return
            self.assistant.send_message(session_id, text)
        except Exception as e:
            self._events.post(self._delivery_failed, run_id, "to_assistant", chat_id, text, session_id or None, retry, describe(e))
            return
        self._events.post(self._delivered, run_id, "to_assistant", chat_id, text, session_id)

    # ------------------------------------------------------------------
    # Outbound: assistant -> chat
    # ------------------------------------------------------------------

    def _resolve_target(self, session_id: Optional[str]) -> Optional[str]:
        if session_id:
            for chat_id, sid in self._sessions.items():
                if sid == session_id:
                    return chat_id
        # Ambiguous with several active chats.
        if self._sessions:
            return next(reversed(self._sessions))
        return None

    def _route_outbound(self, run_id: int, raw: Any) -> None:
        if not self._live(run_id):
            return
        payload = parse_payload(raw)
        text = payload.text()
        if not text.strip():
            return
        if not self._fingerprints.add(fingerprint(text)):
            logger.debug("duplicate reply dropped", extra={"session_id": payload.session_id})
            return

        target = self._resolve_target(payload.session_id)
        if target is None:
            logger.warning("reply has no destination chat yet; queued", extra={"session_id": payload.session_id, "direction": "to_chat"})
            self._enqueue(PendingMessage(direction="to_chat", target=None, text=text, session_id=payload.session_id))
            return
        self._to_chat.post(self._deliver_to_chat, run_id, target, text, payload.session_id, None)

    def _deliver_to_chat(
        self,
        run_id: int,
        chat_id: str,
        text: str,
        session_id: Optional[str],
        retry: Optional[PendingMessage],
    ) -> None:
        # to-chat lane
        if run_id != self._run_id:
            return
        try:
            self.gateway.send_message(chat_id, text)
        except Exception as e:
            self._events.post(self._delivery_failed, run_id, "to_chat", chat_id, text, session_id, retry, describe(e))
            return
        self._events.post(self._delivered, run_id, "to_chat", chat_id, text, session_id)

    # ------------------------------------------------------------------
    # Delivery outcomes and retry queue
    # ------------------------------------------------------------------

    def _delivered(self, run_id: int, direction: Direction, chat_id: str, text: str, session_id: Optional[str]) -> None:
        if run_id != self._run_id:
            return
        logger.info(
            "delivered: %s",
            _clip(text),
            extra={"chat_id": chat_id, "session_id": session_id, "direction": direction},
        )
        self.events.emit(
            "message",
            BridgeMessageEvent(direction=direction, chat_id=chat_id, text=text, session_id=session_id or None),
        )

    def _delivery_failed(
        self,
        run_id: int,
        direction: Direction,
        target: Optional[str],
        text: str,
        session_id: Optional[str],
        retry: Optional[PendingMessage],
        reason: str,
    ) -> None:
        if not self._live(run_id):
            return
        extra = {"chat_id": target, "session_id": session_id, "direction": direction}
        if retry is None:
            logger.warning("delivery failed, queued for retry: %s", reason, extra=extra)
            self._enqueue(PendingMessage(direction=direction, target=target, text=text, session_id=session_id))
            return
        self._retry_failed(retry, reason, target=target)

    def _retry_failed(self, item: PendingMessage, reason: str, *, target: Optional[str] = None) -> None:
        count = item.retry_count + 1
        extra = {"chat_id": target or item.target, "session_id": item.session_id, "direction": item.direction}
        if count >= self._tuning.retry_limit:
            logger.error("dropping message after %d retries: %s", count, reason, extra=extra)
            return
        logger.warning("retry %d/%d failed: %s", count, self._tuning.retry_limit, reason, extra=extra)
        self._enqueue(item.model_copy(update={"retry_count": count, "target": target or item.target}))

    def _enqueue(self, item: PendingMessage) -> None:
        evicted = self._queue.push(item)
        if evicted is not None:
            logger.warning(
                "retry queue full (%d); dropped oldest message",
                self._queue.capacity,
                extra={"chat_id": evicted.target, "direction": evicted.direction},
            )

    def _start_drain_timer(self, run_id: int) -> None:
        self._stop_drain_timer()
        stop_evt = threading.Event()
        self._drain_stop = stop_evt
        interval = float(self._tuning.drain_interval)

        def tick() -> None:
            while not stop_evt.wait(interval):
                self._events.post(self._drain, run_id)

        threading.Thread(target=tick, name="oclb-drain", daemon=True).start()

    def _stop_drain_timer(self) -> None:
        if self._drain_stop is not None:
            self._drain_stop.set()
            self._drain_stop = None

    def drain(self) -> None:
        """Run one retry pass now (the timer does this every drain_interval)."""
        run_id = self._run_id
        self._events.call(self._drain, run_id)

    def _drain(self, run_id: int) -> None:
        if run_id != self._run_id or self._status != STATE_CONNECTED:
            return
        items = self._queue.take_all()
        if not items:
            return
        logger.info("draining %d queued message(s)", len(items))
        for item in items:
            if item.direction == "to_assistant":
                if not item.target:
                    logger.error("dropping queued message without a chat id")
                    continue
                self._to_assistant.post(self._deliver_to_assistant, run_id, item.target, item.text, item)
                continue
            target = item.target or self._resolve_target(item.session_id)
            if target is None:
                self._retry_failed(item, "no destination chat")
                continue
            self._to_chat.post(self._deliver_to_chat, run_id, target, item.text, item.session_id, item)


def build_engine(config: Optional[BridgeConfig] = None) -> BridgeEngine:
    """Engine wired to the Feishu gateway and an opencode-style assistant."""
    domain = config.feishu.domain if config is not None else ""
    return BridgeEngine(FeishuGateway(domain=domain), AssistantClient())
