from __future__ import annotations
from typing import Tuple
from urllib.parse import urlsplit

# ========================================
#           ENDPOINT HELPERS
# ========================================

_DEFAULT_PORTS = {"ws": 80, "wss": 443}


def is_hostport(s: str) -> bool:
    """
    Accepts 'hostname:port' or 'A.B.C.D:port'.

    Validates that:
    - String contains a colon
    - Port is a valid integer between 1 and 65535
    - Hostname is non-empty and carries no scheme or path

    Examples: "localhost:8080", "192.168.1.5:8080", "example.com:443"
    """
    try:
        if ':' not in s:
            return False
        host, port_s = s.rsplit(':', 1)
        if not host or "/" in host:
            return False
        port = int(port_s)
        return 0 < port <= 65535
    except ValueError:
        return False


def parse_ws_url(url: str) -> Tuple[str, str, int]:
    """
    Split a WebSocket URL into (scheme, host, port).

    Raises ValueError for anything that is not ws:// or wss:// with a host.
    A missing port falls back to the scheme default.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"Unsupported scheme in {url!r}; expected ws or wss")
    if not parts.hostname:
        raise ValueError(f"No host in {url!r}")
    port = parts.port if parts.port is not None else _DEFAULT_PORTS[scheme]
    return scheme, parts.hostname, port


def build_ws_url(host: str, port: int, scheme: str = "ws") -> str:
    """Inverse of parse_ws_url for the common case."""
    return f"{scheme}://{host}:{port}"
