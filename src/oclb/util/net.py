from __future__ import annotations

import socket


def port_in_use(host: str, port: int, *, timeout: float = 0.5) -> bool:
    """True when something already accepts TCP connections on host:port."""
    try:
        with socket.create_connection((str(host), int(port)), timeout=timeout):
            return True
    except OSError:
        return False


def free_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])
