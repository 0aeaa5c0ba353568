"""Outbound event delivery helpers for the gateway."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import E_ERROR
from .envelope import encode_event

if TYPE_CHECKING:
    from .stats import StatsManager
    from .transport import Connection


class MessageHelper:
    """
    Encodes and delivers outbound events.

    Handles:
    - Event framing (CBOR envelopes)
    - Single-recipient and multi-recipient delivery
    - Error emission
    - Outbound counters
    """

    def __init__(self, stats: StatsManager) -> None:
        self.stats = stats
        self.log = logging.getLogger("rrcgw.messages")

    def send_payload(self, conn: Connection | None, payload: bytes) -> bool:
        if conn is None:
            return False
        try:
            ok = bool(conn.send(payload))
        except Exception:
            self.log.debug(
                "Send failed conn=%s bytes=%s",
                getattr(conn, "connection_id", "-"),
                len(payload),
                exc_info=True,
            )
            ok = False

        if ok:
            self.stats.inc("frames_out")
            self.stats.inc("bytes_out", len(payload))
        else:
            self.stats.inc("send_failures")
        return ok

    def send_event(self, conn: Connection | None, event: str, body: Any = None) -> bool:
        """Encode and deliver one event to one connection."""
        return self.send_payload(conn, encode_event(event, body))

    def fan_out(self, conns: list[Connection | None], event: str, body: Any = None) -> int:
        """Deliver the same event to every connection; the frame is encoded once."""
        payload = encode_event(event, body)
        delivered = 0
        for conn in conns:
            if self.send_payload(conn, payload):
                delivered += 1
        return delivered

    def emit_error(self, conn: Connection | None, text: str) -> None:
        self.stats.inc("errors_sent")
        self.send_event(conn, E_ERROR, {"message": text})
