from __future__ import annotations

import argparse
from typing import Optional

import uvicorn

from ...kernel.settings import load_config
from ...util.obslog import setup_root_json_logging
from .app import create_app


def main(argv: Optional[list[str]] = None) -> int:
    cfg = load_config()
    default_host = cfg.web.host if cfg is not None else "127.0.0.1"
    default_port = cfg.web.port if cfg is not None else 3000

    parser = argparse.ArgumentParser(prog="oclb run", description="oclb control plane (FastAPI) + bridge")
    parser.add_argument("--host", default=default_host, help=f"Bind host (default: {default_host})")
    parser.add_argument("--port", type=int, default=default_port, help=f"Bind port (default: {default_port})")
    parser.add_argument("--autostart", action="store_true", default=None, help="Start the bridge once the server is up")
    parser.add_argument("--log-level", default="info", help="Log level (default: info)")
    args = parser.parse_args(argv)

    setup_root_json_logging(component="oclb", level=str(args.log_level))
    app = create_app(autostart=args.autostart)

    try:
        uvicorn.run(
            app,
            host=str(args.host),
            port=int(args.port),
            log_level=str(args.log_level),
        )
    except (KeyboardInterrupt, SystemExit):
        pass

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
