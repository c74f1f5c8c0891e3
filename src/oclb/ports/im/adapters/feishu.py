"""
Lark / Feishu gateway for the bridge.

Uses the Feishu Open API with a WebSocket long connection for inbound messages
and the REST API for outbound ones.
Reference: https://open.feishu.cn/document/

Features:
- tenant_access_token auto-refresh (2h expiry)
- WebSocket event subscription (long connection, official lark-oapi SDK)
- Rate limiting (5 msg/sec per chat)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, Dict, List, Optional

from ....contracts.v1 import ChatMessage
from ....kernel.errors import AlreadyRunning, BridgeError, ConfigInvalid, SendFailed
from .base import ChatGateway

logger = logging.getLogger("oclb.feishu")

# Feishu API limits
FEISHU_MAX_MESSAGE_LENGTH = 4096
DEFAULT_MAX_CHARS = 4000
DEFAULT_MAX_LINES = 200

# API domains:
# - Feishu (CN): https://open.feishu.cn
# - Lark (Global): https://open.larkoffice.com
FEISHU_DOMAIN = "https://open.feishu.cn"
LARK_DOMAIN = "https://open.larkoffice.com"

# The SDK connects inside its blocking start(); a thread that dies within this
# window means the connection was refused.
WS_SETTLE_S = 1.0
WS_STOP_TIMEOUT_S = 2.0

_MENTION_KEY_RE = re.compile(r"@_user_\d+")

# (app_id, app_secret, domain, on_message) -> object with a blocking start()
# and a stop() that makes start() return
WsClientFactory = Callable[[str, str, str, Callable[[Any], None]], Any]


def _normalize_domain(domain: str) -> str:
    d = str(domain or "").strip()
    if not d:
        return FEISHU_DOMAIN
    d = d.rstrip("/")
    if d.endswith("/open-apis"):
        d = d[: -len("/open-apis")]
        d = d.rstrip("/")
    if not (d.startswith("http://") or d.startswith("https://")):
        d = "https://" + d
    return d


def _lark_ws_client(app_id: str, app_secret: str, domain: str, on_message: Callable[[Any], None]) -> "LarkListener":
    try:
        import lark_oapi as lark  # type: ignore
        import lark_oapi.ws.client as ws_client_mod  # type: ignore
    except ImportError as e:
        raise BridgeError("missing dependency lark-oapi (pip install lark-oapi)") from e

    event_handler = lark.EventDispatcherHandler.builder("", "") \
        .register_p2_im_message_receive_v1(on_message) \
        .build()
    client = ws_client_mod.Client(
        app_id=app_id,
        app_secret=app_secret,
        event_handler=event_handler,
        log_level=lark.LogLevel.INFO,
        domain=domain,
    )
    return LarkListener(client, ws_client_mod)


class LarkListener:
    """
    Runs one lark-oapi WebSocket client on an event loop of its own.

    The SDK client has no stop() and schedules everything on the module-level
    `lark_oapi.ws.client.loop`, so a second client in the same process would
    find that loop already running. Each listener installs a fresh loop there
    for the lifetime of its start() and tears it down on stop().
    """

    def __init__(self, client: Any, ws_module: Any) -> None:
        self.client = client
        self._ws_module = ws_module
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False

    def start(self) -> None:
        loop = asyncio.new_event_loop()
        with self._lock:
            if self._stopping:
                loop.close()
                return
            self._loop = loop
        asyncio.set_event_loop(loop)
        self._ws_module.loop = loop
        try:
            self.client.start()
        except RuntimeError:
            # loop.stop() from stop() ends the SDK's run_until_complete this way
            if not self._stopping:
                raise
        finally:
            self._close_loop(loop)

    def stop(self) -> None:
        with self._lock:
            self._stopping = True
            loop = self._loop
        if hasattr(self.client, "_auto_reconnect"):
            self.client._auto_reconnect = False
        if loop is None or loop.is_closed():
            return
        disconnect = getattr(self.client, "_disconnect", None)
        try:
            if callable(disconnect):
                fut = asyncio.run_coroutine_threadsafe(disconnect(), loop)
                try:
                    fut.result(timeout=WS_STOP_TIMEOUT_S)
                except Exception as e:
                    logger.warning("[ws] disconnect failed: %s", e)
            loop.call_soon_threadsafe(loop.stop)
        except RuntimeError:
            # Loop closed in the meantime; the listener already exited.
            pass

    def _close_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            asyncio.set_event_loop(None)
            loop.close()


class RateLimiter:
    """
    Rate limiter for Feishu API.

    Feishu limits:
    - Same chat: ~5 msg/sec
    - Total: ~100 msg/sec
    """

    def __init__(self, max_per_second: float = 5.0):
        self.min_interval = 1.0 / max_per_second
        self.last_send: Dict[str, float] = {}
        self.lock = threading.Lock()

    def acquire(self, chat_id: str) -> float:
        """
        Check if we can send to this chat.
        Returns wait time in seconds (0 if can send immediately).
        """
        with self.lock:
            now = time.time()
            last = self.last_send.get(chat_id, 0)
            elapsed = now - last

            if elapsed >= self.min_interval:
                self.last_send[chat_id] = now
                return 0.0
            return self.min_interval - elapsed

    def wait_and_acquire(self, chat_id: str) -> None:
        wait_time = self.acquire(chat_id)
        if wait_time > 0:
            time.sleep(wait_time)
            self.acquire(chat_id)


class FeishuGateway(ChatGateway):
    """
    Feishu gateway using WebSocket for inbound and REST API for outbound.
    """

    platform = "feishu"

    def __init__(
        self,
        domain: str = FEISHU_DOMAIN,
        *,
        max_chars: int = DEFAULT_MAX_CHARS,
        max_lines: int = DEFAULT_MAX_LINES,
        ws_client_factory: Optional[WsClientFactory] = None,
    ):
        super().__init__(logger=logger)
        self.domain = _normalize_domain(domain)
        self.api_base = f"{self.domain}/open-apis"
        self.max_chars = max_chars
        self.max_lines = max_lines
        self._ws_client_factory = ws_client_factory or _lark_ws_client

        self.app_id = ""
        self.app_secret = ""

        # Token management
        self._token: str = ""
        self._token_expires: float = 0
        self._token_error: str = ""
        self._token_lock = threading.Lock()

        self._rate_limiter = RateLimiter(max_per_second=5.0)

        # Connection state
        self._state_lock = threading.Lock()
        self._connected = False
        self._stopping = False
        self._ws_client: Any = None
        self._ws_thread: Optional[threading.Thread] = None
        self._ws_error: str = ""

    @property
    def is_connected(self) -> bool:
        with self._state_lock:
            return self._connected

    # ------------------------------------------------------------------
    # Auth / REST
    # ------------------------------------------------------------------

    def _get_token(self) -> str:
        """Get valid tenant_access_token, refreshing if needed."""
        with self._token_lock:
            now = time.time()
            # Refresh 5 minutes before expiry
            if self._token and now < self._token_expires - 300:
                return self._token
            if self._refresh_token():
                return self._token
            return ""

    def _refresh_token(self) -> bool:
        url = f"{self.api_base}/auth/v3/tenant_access_token/internal"
        data = json.dumps({
            "app_id": self.app_id,
            "app_secret": self.app_secret,
        }, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url, data=data, method="POST")
        req.add_header("Content-Type", "application/json; charset=utf-8")

        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                result = json.loads(resp.read().decode("utf-8", errors="replace"))
        except Exception as e:
            self._token_error = str(e)
            logger.warning("[token] error: %s", e)
            return False

        if result.get("code") == 0:
            self._token = result.get("tenant_access_token", "")
            expire = int(result.get("expire", 7200))
            self._token_expires = time.time() + expire
            self._token_error = ""
            logger.debug("[token] refreshed, expires in %ss", expire)
            return True
        self._token_error = str(result.get("msg") or "unknown")
        logger.warning("[token] failed: %s", self._token_error)
        return False

    def _api(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
        timeout: int = 15,
    ) -> Dict[str, Any]:
        """Call the Open API; errors come back as a dict with a non-zero `code`."""
        token = self._get_token()
        if not token:
            return {"code": -1, "msg": f"no valid token ({self._token_error or 'unknown'})"}

        url = f"{self.api_base}{endpoint}"
        data = json.dumps(body or {}, ensure_ascii=False).encode("utf-8") if body else None

        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Authorization", f"Bearer {token}")
        req.add_header("Content-Type", "application/json; charset=utf-8")
        req.add_header("Accept", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return json.loads(resp.read().decode("utf-8", errors="replace"))
        except urllib.error.HTTPError as e:
            err_text = ""
            try:
                err_text = e.read().decode("utf-8", "ignore")[:300]
            except Exception:
                pass
            logger.warning("[api] %s %s: HTTP %s - %s", method, endpoint, e.code, err_text)
            return {"code": e.code, "msg": str(e), "error": err_text}
        except Exception as e:
            logger.warning("[api] %s %s: %s", method, endpoint, e)
            return {"code": -1, "msg": str(e)}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, app_id: str, app_secret: str) -> None:
        """
        1. Verify credentials by getting a token
        2. Start the WebSocket event listener
        """
        app_id = str(app_id or "").strip()
        app_secret = str(app_secret or "").strip()
        if not app_id or not app_secret:
            raise ConfigInvalid("app_id and app_secret are required")

        with self._state_lock:
            if self._connected:
                raise AlreadyRunning("feishu gateway already started")
            self._stopping = False
            self._ws_error = ""

        self.app_id = app_id
        self.app_secret = app_secret
        with self._token_lock:
            self._token = ""
            self._token_expires = 0
            if not self._refresh_token():
                raise BridgeError(f"feishu auth failed: {self._token_error or 'unknown'}")

        self._ws_client = self._ws_client_factory(app_id, app_secret, self.domain, self._on_p2_message)
        th = threading.Thread(target=self._ws_loop, args=(self._ws_client,), name="oclb-feishu-ws", daemon=True)
        self._ws_thread = th
        th.start()
        th.join(timeout=WS_SETTLE_S)
        if not th.is_alive():
            raise BridgeError(f"feishu long connection failed: {self._ws_error or 'listener exited'}")

        with self._state_lock:
            if self._stopping:
                raise BridgeError("feishu gateway stopped during start")
            self._connected = True
        logger.info("[connect] connected (domain=%s, app_id=%s...)", self.domain, app_id[:8])
        self.events.emit("connected")

    def _ws_loop(self, client: Any) -> None:
        logger.info("[ws] event listener starting")
        try:
            # start() is blocking, runs until stopped
            client.start()
        except Exception as e:
            self._ws_error = str(e) or type(e).__name__
            logger.exception("[ws] SDK error")
        logger.info("[ws] event listener stopped")

        with self._state_lock:
            if self._stopping or not self._connected:
                return
            self._connected = False
        self.events.emit("error", BridgeError(f"feishu long connection lost: {self._ws_error or 'closed'}"))
        self.events.emit("disconnected")

    def stop(self) -> None:
        with self._state_lock:
            self._stopping = True
            self._connected = False
            client = self._ws_client
            th = self._ws_thread
            self._ws_client = None
            self._ws_thread = None

        if client is not None:
            stop_fn = getattr(client, "stop", None)
            if callable(stop_fn):
                try:
                    stop_fn()
                except Exception as e:
                    logger.warning("[disconnect] ws client stop failed: %s", e)
        if th is not None and th is not threading.current_thread():
            th.join(timeout=2.0)
        logger.info("[disconnect] disconnected")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_p2_message(self, data: Any) -> None:
        """SDK callback for im.message.receive_v1; flattens the event object."""
        with self._state_lock:
            if self._stopping:
                logger.debug("[ws] event after stop dropped")
                return
        try:
            event_obj = getattr(data, "event", None)
            message: Dict[str, Any] = {}
            sender: Dict[str, Any] = {"sender_id": {}}

            msg = getattr(event_obj, "message", None) if event_obj is not None else None
            if msg is not None:
                mentions: List[Dict[str, str]] = []
                for m in getattr(msg, "mentions", None) or []:
                    mentions.append({
                        "key": getattr(m, "key", "") or "",
                        "name": getattr(m, "name", "") or "",
                    })
                message = {
                    "message_id": getattr(msg, "message_id", "") or "",
                    "chat_id": getattr(msg, "chat_id", "") or "",
                    "chat_type": getattr(msg, "chat_type", "") or "",
                    "message_type": getattr(msg, "message_type", "") or "",
                    "content": getattr(msg, "content", "{}") or "{}",
                    "mentions": mentions,
                }

            snd = getattr(event_obj, "sender", None) if event_obj is not None else None
            if snd is not None:
                sender["sender_type"] = getattr(snd, "sender_type", "") or ""
                sid = getattr(snd, "sender_id", None)
                if sid is not None:
                    sender["sender_id"] = {
                        "open_id": getattr(sid, "open_id", "") or "",
                        "user_id": getattr(sid, "user_id", "") or "",
                    }

            self.handle_event({"message": message, "sender": sender})
        except Exception:
            logger.exception("[ws] event handler error")

    def handle_event(self, event: Dict[str, Any]) -> Optional[ChatMessage]:
        """Normalize one receive event and emit it as `message`. Returns what was emitted."""
        message = event.get("message") or {}
        sender = event.get("sender") or {}

        # Skip bot's own messages
        if sender.get("sender_type") == "app":
            return None

        chat_id = str(message.get("chat_id") or "")
        if not chat_id:
            return None

        msg_type = message.get("message_type", "")
        content_str = message.get("content", "{}")
        try:
            content = json.loads(content_str)
        except Exception:
            content = {"text": str(content_str or "")}
        if not isinstance(content, dict):
            content = {}

        if msg_type == "post":
            text = self._extract_post_text(content)
        elif msg_type in ("text", ""):
            text = str(content.get("text", "") or "")
        else:
            logger.debug("[ws] ignoring %s message", msg_type, extra={"chat_id": chat_id})
            return None

        mentions = message.get("mentions") or []
        text = _MENTION_KEY_RE.sub("", text).strip()
        if not text:
            return None

        normalized = ChatMessage(
            chat_id=chat_id,
            text=text,
            user_id=str((sender.get("sender_id") or {}).get("open_id") or ""),
            message_id=str(message.get("message_id") or ""),
            is_mentioned=len(mentions) > 0,
            chat_type=str(message.get("chat_type") or ""),
        )
        self.events.emit("message", normalized)
        return normalized

    def _extract_post_text(self, content: Dict[str, Any]) -> str:
        """Extract plain text from rich text (post) content."""
        texts = []
        try:
            # Post content structure: {"title": "...", "content": [[{tag, ...}]]}
            title = content.get("title", "")
            if title:
                texts.append(title)

            for line in content.get("content", []):
                for elem in line:
                    tag = elem.get("tag", "")
                    if tag == "text":
                        texts.append(elem.get("text", ""))
                    elif tag == "a":
                        texts.append(elem.get("text", elem.get("href", "")))
        except Exception:
            pass
        return " ".join(t for t in texts if t)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_message(self, chat_id: str, text: str) -> None:
        if not chat_id:
            raise SendFailed("chat_id is required")
        if not text or not text.strip():
            return
        if not self.app_id or not self.app_secret:
            raise SendFailed("feishu gateway not started")

        safe_text = self._compose_safe(text)
        self._rate_limiter.wait_and_acquire(chat_id)

        body: Dict[str, Any] = {
            "receive_id": chat_id,
            "msg_type": "text",
            "content": json.dumps({"text": safe_text}, ensure_ascii=False),
        }
        # receive_id_type goes in the query string, not the body
        query = urllib.parse.urlencode({"receive_id_type": "chat_id"})
        resp = self._api("POST", f"/im/v1/messages?{query}", body)

        if resp.get("code") == 0:
            logger.debug("[send] ok (%d chars)", len(safe_text), extra={"chat_id": chat_id})
            return
        raise SendFailed(
            f"feishu send to {chat_id} failed: {resp.get('msg', 'unknown')}",
            details={"code": resp.get("code"), "error": resp.get("error", "")},
        )

    def _compose_safe(self, text: str) -> str:
        """Ensure message fits within Feishu limits."""
        summarized = self.summarize(text, self.max_chars, self.max_lines)
        if len(summarized) > FEISHU_MAX_MESSAGE_LENGTH:
            summarized = summarized[: FEISHU_MAX_MESSAGE_LENGTH - 1] + "…"
        return summarized
