from __future__ import annotations

import argparse
import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Optional

import requests

from . import __version__
from .contracts.v1 import BridgeConfig
from .kernel.errors import ConfigInvalid
from .kernel.settings import load_config, save_config, validate_config
from .paths import config_path, ensure_home, log_path, pid_path
from .util.fs import follow, read_last_lines, read_pid, remove_file, write_pid

STOP_GRACE_S = 10.0


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _running_pid() -> Optional[int]:
    pid = read_pid(pid_path())
    if pid and _pid_alive(pid):
        return pid
    if pid:
        # Stale pid file from a crashed run.
        remove_file(pid_path())
    return None


def cmd_init(args: argparse.Namespace) -> int:
    path = config_path()
    if path.exists() and not args.force:
        _print_json({"ok": False, "error": {"code": "config_exists", "message": f"config already exists: {path} (use --force)"}})
        return 1

    cfg = BridgeConfig()
    cfg.feishu.app_id = str(args.app_id or "").strip()
    cfg.feishu.app_secret = str(args.app_secret or "").strip()
    cfg.feishu.app_secret_env = str(args.app_secret_env or "").strip()
    if args.domain:
        cfg.feishu.domain = str(args.domain).strip()
    cfg.assistant.work_dir = str(Path(args.work_dir or ".").expanduser().resolve())
    if args.port:
        cfg.assistant.port = int(args.port)
    if args.web_port:
        cfg.web.port = int(args.web_port)

    try:
        saved = save_config(cfg, path)
    except ConfigInvalid as e:
        _print_json({"ok": False, "error": e.to_dict()})
        return 2
    _print_json({"ok": True, "result": {"path": str(saved), "problems": validate_config(load_config(saved))}})
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    from .ports.web.main import main as web_main

    existing = _running_pid()
    if existing and existing != os.getpid():
        print(f"oclb: already running pid={existing}", file=sys.stderr)
        return 1

    ensure_home()
    write_pid(pid_path(), os.getpid())
    argv = ["--log-level", str(args.log_level)]
    if args.host:
        argv += ["--host", str(args.host)]
    if args.port:
        argv += ["--port", str(args.port)]
    if not args.no_autostart:
        argv.append("--autostart")
    try:
        return web_main(argv)
    finally:
        if read_pid(pid_path()) == os.getpid():
            remove_file(pid_path())


def cmd_start(args: argparse.Namespace) -> int:
    pid = _running_pid()
    if pid:
        print(f"oclb: already running pid={pid}")
        return 0

    home = ensure_home()
    log_f = log_path().open("a", encoding="utf-8")
    env = os.environ.copy()
    env["OCLB_HOME"] = str(home)
    argv = [sys.executable, "-m", "oclb", "run", "--log-level", str(args.log_level)]
    if args.no_autostart:
        argv.append("--no-autostart")
    p = subprocess.Popen(
        argv,
        stdout=log_f,
        stderr=log_f,
        stdin=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        cwd=str(Path.cwd()),
    )
    log_f.close()

    for _ in range(30):
        time.sleep(0.1)
        if p.poll() is not None:
            print(f"oclb: failed to start (exit {p.returncode}); see {log_path()}", file=sys.stderr)
            return 1
        if read_pid(pid_path()) == p.pid:
            break
    print(f"oclb: started pid={p.pid}")
    print(f"oclb: log {log_path()}")
    return 0


def cmd_stop(_: argparse.Namespace) -> int:
    pid = _running_pid()
    if not pid:
        print("oclb: not running")
        return 0

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        remove_file(pid_path())
        print("oclb: not running")
        return 0

    deadline = time.monotonic() + STOP_GRACE_S
    while time.monotonic() < deadline:
        if not _pid_alive(pid):
            break
        time.sleep(0.1)
    else:
        try:
            os.kill(pid, signal.SIGKILL)
            print("oclb: SIGKILL sent")
        except ProcessLookupError:
            pass

    remove_file(pid_path())
    print(f"oclb: stopped pid={pid}")
    return 0


def cmd_status(_: argparse.Namespace) -> int:
    pid = _running_pid()
    if not pid:
        print("oclb: not running")
        return 1

    try:
        cfg = load_config()
    except ConfigInvalid as e:
        _print_json({"ok": False, "error": e.to_dict()})
        return 2
    host = cfg.web.host if cfg is not None else "127.0.0.1"
    port = cfg.web.port if cfg is not None else 3000
    try:
        resp = requests.get(f"http://{host}:{port}/api/status", timeout=3)
        result = resp.json().get("result", {})
    except (requests.RequestException, ValueError) as e:
        print(f"oclb: running pid={pid} (control plane unreachable: {e})")
        return 0
    _print_json({"ok": True, "result": {"pid": pid, **result}})
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    path = log_path()
    for line in read_last_lines(path, args.lines):
        print(line)
    if args.follow:
        try:
            for line in follow(path):
                print(line, flush=True)
        except KeyboardInterrupt:
            pass
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="oclb", description="Feishu <-> local assistant bridge")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Write a config file")
    p_init.add_argument("--app-id", default="", help="Feishu app id (cli_...)")
    p_init.add_argument("--app-secret", default="", help="Feishu app secret")
    p_init.add_argument("--app-secret-env", default="", help="Env var holding the app secret (e.g. FEISHU_APP_SECRET)")
    p_init.add_argument("--domain", default="", help="Open API domain (default: https://open.feishu.cn)")
    p_init.add_argument("-w", "--work-dir", default=".", help="Assistant working directory (default: .)")
    p_init.add_argument("--port", type=int, default=0, help="Assistant port (default: 4096)")
    p_init.add_argument("--web-port", type=int, default=0, help="Control plane port (default: 3000)")
    p_init.add_argument("-f", "--force", action="store_true", help="Overwrite an existing config")
    p_init.set_defaults(func=cmd_init)

    p_run = sub.add_parser("run", help="Run control plane + bridge in the foreground")
    p_run.add_argument("--host", default="", help="Control plane bind host")
    p_run.add_argument("--port", type=int, default=0, help="Control plane bind port")
    p_run.add_argument("--no-autostart", action="store_true", help="Do not start the bridge automatically")
    p_run.add_argument("--log-level", default="info", help="Log level (default: info)")
    p_run.set_defaults(func=cmd_run)

    p_start = sub.add_parser("start", help="Run in the background")
    p_start.add_argument("--no-autostart", action="store_true", help="Do not start the bridge automatically")
    p_start.add_argument("--log-level", default="info", help="Log level (default: info)")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Stop the background process")
    p_stop.set_defaults(func=cmd_stop)

    p_status = sub.add_parser("status", help="Show process and bridge status")
    p_status.set_defaults(func=cmd_status)

    p_logs = sub.add_parser("logs", help="Show the background process log")
    p_logs.add_argument("-n", "--lines", type=int, default=50, help="Show last N lines (default: 50)")
    p_logs.add_argument("-f", "--follow", action="store_true", help="Follow (like tail -f)")
    p_logs.set_defaults(func=cmd_logs)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
