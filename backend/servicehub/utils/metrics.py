"""
Best-effort StatsD counters for the realtime layer.

Usage (non-blocking, never raises):
  from servicehub.utils.metrics import incr, timing_ms
  incr('ws.auth.fail', tags={'reason': 'expired'})
  timing_ms('ws.broadcast.ms', 4.2, tags={'room': 'conversation'})

Env:
  METRICS_STATSD_ADDR = "host:port" (e.g., "127.0.0.1:8125")
  METRICS_TAGS = "1" enables Datadog-style tag suffix (|#key:val,...)
"""

from __future__ import annotations

import os
import socket
from typing import Dict, Optional

_ADDR = os.getenv("METRICS_STATSD_ADDR", "").strip()
_USE_TAGS = os.getenv("METRICS_TAGS", "1") not in ("0", "false", "False")
_SOCK: Optional[socket.socket] = None


def _get_sock() -> Optional[socket.socket]:
    global _SOCK
    if not _ADDR:
        return None
    if _SOCK is not None:
        return _SOCK
    try:
        host, port = _ADDR.split(":", 1)
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect((host, int(port)))
    except (OSError, ValueError):
        return None
    _SOCK = s
    return _SOCK


def _format_tags(tags: Optional[Dict[str, object]]) -> str:
    if not tags or not _USE_TAGS:
        return ""
    parts = [
        f"{str(k).replace(',', '_')}:{str(v).replace(',', '_')}"
        for k, v in tags.items()
        if k is not None
    ]
    return "|#" + ",".join(parts) if parts else ""


def _emit(msg: str) -> None:
    s = _get_sock()
    if not s:
        return
    try:
        s.send(msg.encode("utf-8"))
    except OSError:
        # UDP sink is best-effort only
        pass


def incr(name: str, value: int = 1, tags: Optional[Dict[str, object]] = None) -> None:
    _emit(f"{name}:{int(value)}|c{_format_tags(tags)}")


def timing_ms(name: str, ms: float, tags: Optional[Dict[str, object]] = None) -> None:
    _emit(f"{name}:{float(ms):.2f}|ms{_format_tags(tags)}")
