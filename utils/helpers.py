"""
Small numeric and time helpers shared by the protocol and automation code.
"""

import time
from typing import Any

# Offset between the game server clock and the local clock, in seconds
_server_time_offset = 0.0


def to_num(value: Any, default: int = 0) -> int:
    """Convert protobuf int64 values (and anything int-like) to int."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_time_sec(value: Any) -> int:
    """Normalize an epoch timestamp to seconds.

    The server mixes second and millisecond timestamps; anything past the
    year 33658 in seconds is treated as milliseconds.
    """
    ts = to_num(value)
    if ts <= 0:
        return 0
    if ts > 1_000_000_000_000:
        return ts // 1000
    return ts


def sync_server_time(server_time_ms: int):
    """Record the server clock from a login or heartbeat reply."""
    global _server_time_offset
    server_ms = to_num(server_time_ms)
    if server_ms <= 0:
        return
    _server_time_offset = server_ms / 1000.0 - time.time()


def now_sec() -> int:
    """Current server time in whole seconds."""
    return int(time.time() + _server_time_offset)
