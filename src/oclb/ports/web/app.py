from __future__ import annotations

import asyncio
import json
import logging
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ... import __version__
from ...contracts.v1 import STATE_IDLE, BridgeConfig, BridgeStatus, missing_fields
from ...kernel.errors import AlreadyRunning, BridgeError, ConfigInvalid, PortInUse
from ...kernel.settings import load_config, parse_config, save_config, validate_config
from ...paths import config_path as default_config_path
from ...paths import ensure_home
from ...util.obslog import LogRing, attach_log_ring
from ...util.procs import kill_port_owner
from ..im.bridge import BridgeEngine, build_engine

logger = logging.getLogger("oclb.web")

EngineFactory = Callable[[BridgeConfig], BridgeEngine]

_ERROR_STATUS = {
    ConfigInvalid: 400,
    AlreadyRunning: 409,
    PortInUse: 409,
}

SSE_HEARTBEAT_S = 15.0


def _status_code_for(exc: BridgeError) -> int:
    for cls, code in _ERROR_STATUS.items():
        if isinstance(exc, cls):
            return code
    return 500


class ControlPlane:
    """Owns the (single) bridge engine behind the HTTP surface."""

    def __init__(self, *, engine: Optional[BridgeEngine], engine_factory: EngineFactory, config_path: Path) -> None:
        self.engine = engine
        self.engine_factory = engine_factory
        self.config_path = config_path
        self._lock = threading.Lock()

    def load(self) -> Optional[BridgeConfig]:
        return load_config(self.config_path)

    def status(self) -> BridgeStatus:
        if self.engine is None:
            return BridgeStatus(status=STATE_IDLE)
        return self.engine.get_status()

    def start(self) -> BridgeStatus:
        cfg = self.load()
        if cfg is None:
            raise ConfigInvalid(f"no configuration at {self.config_path}; POST /api/config first")
        problems = validate_config(cfg)
        if problems:
            raise ConfigInvalid("; ".join(problems), details={"errors": problems})
        with self._lock:
            if self.engine is None:
                self.engine = self.engine_factory(cfg)
            engine = self.engine
        return engine.start(cfg)

    def stop(self) -> BridgeStatus:
        with self._lock:
            engine = self.engine
        if engine is not None:
            engine.stop()
        return self.status()

    def close(self) -> None:
        with self._lock:
            engine = self.engine
            self.engine = None
        if engine is not None:
            engine.close()


def _merge_secret(incoming: BridgeConfig, existing: Optional[BridgeConfig]) -> BridgeConfig:
    # A masked secret echoed back from GET /api/config means "unchanged".
    secret = incoming.feishu.app_secret
    if existing is not None and (not secret or "***" in secret):
        out = incoming.model_copy(deep=True)
        out.feishu.app_secret = existing.feishu.app_secret
        return out
    return incoming


async def _sse_logs(ring: LogRing, request: Request) -> AsyncIterator[bytes]:
    loop = asyncio.get_running_loop()
    q: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=1000)

    def _push(entry: Dict[str, Any]) -> None:
        def _put() -> None:
            if not q.full():
                q.put_nowait(entry)

        try:
            loop.call_soon_threadsafe(_put)
        except RuntimeError:
            pass

    remove = ring.add_listener(_push)
    try:
        yield b": connected\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                entry = await asyncio.wait_for(q.get(), timeout=SSE_HEARTBEAT_S)
            except asyncio.TimeoutError:
                yield b": ping\n\n"
                continue
            data = json.dumps(entry, ensure_ascii=False)
            yield b"event: log\n"
            yield b"data: " + data.encode("utf-8", errors="replace") + b"\n\n"
    finally:
        remove()


def create_app(
    *,
    engine: Optional[BridgeEngine] = None,
    engine_factory: EngineFactory = build_engine,
    config_path: Optional[Path] = None,
    log_ring: Optional[LogRing] = None,
    autostart: Optional[bool] = None,
) -> FastAPI:
    path = config_path or default_config_path()
    plane = ControlPlane(engine=engine, engine_factory=engine_factory, config_path=path)
    ring = log_ring
    if ring is None:
        ring = LogRing()
        attach_log_ring(ring)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        cfg = plane.load()
        want = autostart if autostart is not None else bool(cfg is not None and cfg.web.autostart)
        if want:
            def _autostart() -> None:
                try:
                    plane.start()
                except BridgeError as e:
                    logger.error("autostart failed: %s", e.message)

            threading.Thread(target=_autostart, name="oclb-autostart", daemon=True).start()
        yield
        await asyncio.to_thread(plane.close)

    app = FastAPI(title="oclb", version=__version__, lifespan=_lifespan)
    app.state.plane = plane
    app.state.log_ring = ring

    @app.exception_handler(BridgeError)
    async def _bridge_error(_request: Request, exc: BridgeError) -> JSONResponse:
        return JSONResponse(status_code=_status_code_for(exc), content={"ok": False, "error": exc.to_dict()})

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        home = ensure_home()
        return {"ok": True, "result": {"version": __version__, "home": str(home)}}

    @app.get("/api/status")
    async def status() -> Dict[str, Any]:
        st = plane.status()
        cfg = plane.load()
        return {
            "ok": True,
            "result": {
                **st.model_dump(),
                "configured": cfg is not None and not missing_fields(cfg),
            },
        }

    @app.get("/api/config")
    async def get_config() -> Dict[str, Any]:
        cfg = plane.load()
        if cfg is None:
            return {"ok": True, "result": {"config": BridgeConfig().masked(), "exists": False, "problems": validate_config(None)}}
        return {"ok": True, "result": {"config": cfg.masked(), "exists": True, "problems": validate_config(cfg)}}

    @app.post("/api/config")
    async def set_config(request: Request) -> Dict[str, Any]:
        try:
            doc = await request.json()
        except Exception:
            raise HTTPException(status_code=400, detail={"code": "invalid_json", "message": "invalid JSON body"})
        if not isinstance(doc, dict):
            raise HTTPException(status_code=400, detail={"code": "invalid_json", "message": "expected a JSON object"})

        cfg = _merge_secret(parse_config(doc), plane.load())
        missing = [m for m in missing_fields(cfg) if m.startswith("feishu.")]
        if missing:
            raise ConfigInvalid("missing required settings: " + ", ".join(missing), details={"missing": missing})
        saved = save_config(cfg, plane.config_path)
        logger.info("config saved to %s", saved)
        return {"ok": True, "result": {"config": cfg.masked(), "problems": validate_config(cfg)}}

    @app.post("/api/start")
    async def start() -> Dict[str, Any]:
        st = await asyncio.to_thread(plane.start)
        return {"ok": True, "result": st.model_dump()}

    @app.post("/api/stop")
    async def stop() -> Dict[str, Any]:
        st = await asyncio.to_thread(plane.stop)
        return {"ok": True, "result": st.model_dump()}

    @app.post("/api/kill-opencode")
    async def kill_opencode(request: Request) -> Dict[str, Any]:
        try:
            doc = await request.json()
        except Exception:
            raise HTTPException(status_code=400, detail={"code": "invalid_json", "message": "invalid JSON body"})
        raw = doc.get("port") if isinstance(doc, dict) else None
        try:
            port = int(raw)
        except (TypeError, ValueError):
            port = 0
        if isinstance(raw, bool) or not (1 <= port <= 65535):
            raise HTTPException(status_code=400, detail={"code": "invalid_port", "message": "invalid port number"})

        cfg = plane.load()
        own_ports = {request.url.port, cfg.web.port if cfg is not None else None}
        if port in own_ports:
            logger.warning("refused to kill the control plane port %s", port)
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden_port", "message": f"cannot kill the control plane port {port}"},
            )

        logger.info("killing assistant processes on port %s", port)
        report = await asyncio.to_thread(kill_port_owner, port)
        return {"ok": True, "result": report}

    @app.get("/api/logs")
    async def logs(limit: int = 100) -> Dict[str, Any]:
        n = max(1, min(int(limit), 1000))
        return {"ok": True, "result": {"logs": ring.tail(n)}}

    @app.get("/api/logs/stream")
    async def logs_stream(request: Request) -> StreamingResponse:
        return StreamingResponse(
            _sse_logs(ring, request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    return app
