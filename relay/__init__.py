"""
WebRTC signalling relay package.

Peers exchange offers, answers and ICE candidates through the relay, which keeps
the latest values per session and pushes changes to every subscribed
connection over server-sent events or WebSockets.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_PATH",
    "RelayConfig",
]

CONFIG_ENV_VAR = "RELAY_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "configs" / "relay.yaml"


class RelayConfig:
    """Top level relay configuration."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 3000,
        log_level: str = "INFO",
        cors_origins: Optional[List[str]] = None,
        sse_keepalive: float = 15.0,
        queue_size: int = 256,
        ping_interval: float = 0.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.log_level = str(log_level).upper()
        self.cors_origins = list(cors_origins) if cors_origins else ["*"]
        self.sse_keepalive = max(0.0, float(sse_keepalive))
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "RelayConfig":
        data = dict(data or {})
        server = data.get("server") or {}
        sse = data.get("sse") or {}
        websocket = data.get("websocket") or {}
        kwargs: Dict[str, Any] = {}
        for key in ("host", "port", "log_level", "cors_origins"):
            if server.get(key) is not None:
                kwargs[key] = server[key]
        if sse.get("keepalive") is not None:
            kwargs["sse_keepalive"] = sse["keepalive"]
        for key in ("queue_size", "ping_interval", "pong_timeout"):
            if websocket.get(key) is not None:
                kwargs[key] = websocket[key]
        return cls(**kwargs)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "RelayConfig":
        """
        Read configuration from ``path``, ``$RELAY_CONFIG`` or the bundled
        defaults, in that order.  A missing file yields the built-in defaults.
        """

        if path is None:
            env_path = os.environ.get(CONFIG_ENV_VAR)
            path = Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH
        try:
            with Path(path).open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except FileNotFoundError:
            data = {}
        return cls.from_mapping(data)
