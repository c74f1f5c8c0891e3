from __future__ import annotations

import os
from pathlib import Path


def oclb_home() -> Path:
    env = os.environ.get("OCLB_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".oclb").resolve()


def ensure_home() -> Path:
    home = oclb_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def config_path() -> Path:
    return oclb_home() / "config.yaml"


def pid_path() -> Path:
    return oclb_home() / "oclb.pid"


def log_path() -> Path:
    return oclb_home() / "oclb.log"
