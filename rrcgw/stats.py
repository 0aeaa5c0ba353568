"""Statistics tracking and reporting for the gateway."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .registry import SessionRegistry


class StatsManager:
    """
    Lifetime counters for the gateway.

    Tracks counters for:
    - Frames and bytes in/out
    - Bad frames
    - Admissions and rejections
    - Messages broadcast and direct messages routed
    - Policy and authorization denials
    - Moderation actions
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "frames_in": 0,
            "frames_bad": 0,
            "bytes_in": 0,
            "frames_out": 0,
            "bytes_out": 0,
            "send_failures": 0,
            "admitted": 0,
            "rejected": 0,
            "disconnects": 0,
            "messages_broadcast": 0,
            "messages_ignored": 0,
            "direct_messages": 0,
            "direct_dropped": 0,
            "denied": 0,
            "errors_sent": 0,
            "presence_broadcasts": 0,
            "kicks": 0,
            "bans": 0,
            "role_changes": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, registry: SessionRegistry | None = None) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"rrcgw {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")

        if registry is not None:
            rs = registry.get_stats()
            roles = " ".join(f"{k}={v}" for k, v in sorted(rs["by_role"].items()))
            lines.append(
                f"sessions={rs['total']} subjects={rs['subjects']} banned={rs['banned']}"
                + (f" {roles}" if roles else "")
            )

        lines.append(
            "io: frames_in={} frames_bad={} bytes_in={} frames_out={} bytes_out={} send_failures={}".format(
                c["frames_in"],
                c["frames_bad"],
                c["bytes_in"],
                c["frames_out"],
                c["bytes_out"],
                c["send_failures"],
            )
        )
        lines.append(
            "connections: admitted={} rejected={} disconnects={}".format(
                c["admitted"], c["rejected"], c["disconnects"]
            )
        )
        lines.append(
            "messages: broadcast={} ignored_skips={} direct={} direct_dropped={} presence={}".format(
                c["messages_broadcast"],
                c["messages_ignored"],
                c["direct_messages"],
                c["direct_dropped"],
                c["presence_broadcasts"],
            )
        )
        lines.append(
            "moderation: kicks={} bans={} role_changes={} denied={} errors_sent={}".format(
                c["kicks"], c["bans"], c["role_changes"], c["denied"], c["errors_sent"]
            )
        )

        return "\n".join(lines)
