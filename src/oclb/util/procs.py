from __future__ import annotations

import logging
import os
import signal
from typing import Any, Dict, List

import psutil

logger = logging.getLogger("oclb.procs")

ASSISTANT_PROCESS_NAME = "opencode"


def listening_pids(port: int) -> List[int]:
    """PIDs with a TCP socket in LISTEN state on `port` (any address)."""
    try:
        conns = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        return _listening_pids_by_process(port)
    return sorted({
        c.pid for c in conns
        if c.pid and c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port
    })


def _listening_pids_by_process(port: int) -> List[int]:
    # System-wide listing needs privileges on some platforms; walk our own view instead.
    out = set()
    for proc in psutil.process_iter(["pid"]):
        try:
            for c in proc.net_connections(kind="tcp"):
                if c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port:
                    out.add(proc.pid)
                    break
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return sorted(out)


def kill_port_owner(port: int, *, name_match: str = ASSISTANT_PROCESS_NAME) -> Dict[str, Any]:
    """
    SIGKILL the processes listening on `port` whose name contains `name_match`.

    Anything else listening there (and this process itself) is left alone and
    reported under `skipped`.
    """
    needle = name_match.lower()
    killed: List[Dict[str, Any]] = []
    skipped: List[Dict[str, Any]] = []
    for pid in listening_pids(port):
        if pid == os.getpid():
            skipped.append({"pid": pid, "name": "", "reason": "self"})
            continue
        try:
            proc = psutil.Process(pid)
            name = proc.name()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("cannot inspect pid %s on port %s", pid, port, extra={"pid": pid})
            skipped.append({"pid": pid, "name": "", "reason": "access_denied"})
            continue

        if needle not in name.lower():
            logger.warning("skipped non-%s process %s on port %s", name_match, name, port, extra={"pid": pid})
            skipped.append({"pid": pid, "name": name, "reason": "name"})
            continue
        try:
            proc.send_signal(signal.SIGKILL)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("not allowed to kill %s on port %s", name, port, extra={"pid": pid})
            skipped.append({"pid": pid, "name": name, "reason": "access_denied"})
            continue
        logger.info("killed %s on port %s", name, port, extra={"pid": pid})
        killed.append({"pid": pid, "name": name})
    return {"port": port, "killed": killed, "skipped": skipped}
