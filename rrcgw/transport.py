"""Connection handles the gateway core delivers through."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import RNS


class Connection:
    """
    A live, message-framed, bidirectional client channel.

    The gateway core only ever calls ``send`` with an encoded frame and
    ``close``; both must be safe to call from any thread and must not raise.
    """

    connection_id: str

    def send(self, payload: bytes) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class LinkConnection(Connection):
    """Connection backed by a Reticulum ``RNS.Link``.

    Frames that fit the link MDU go out as single packets; larger frames (a
    big presence snapshot, for example) are transferred as an ``RNS.Resource``.
    """

    def __init__(self, link: RNS.Link, *, max_resource_bytes: int) -> None:
        self.link = link
        self.connection_id = link_id_hex(link)
        self.max_resource_bytes = int(max_resource_bytes)
        self.log = logging.getLogger("rrcgw.transport")

    def _packet_would_fit(self, payload: bytes) -> bool:
        import RNS

        try:
            mdu = getattr(self.link, "MDU", None)
            if mdu is not None:
                return len(payload) <= mdu
            pkt = RNS.Packet(self.link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def send(self, payload: bytes) -> bool:
        import RNS

        try:
            if self._packet_would_fit(payload):
                RNS.Packet(self.link, payload).send()
                return True

            if len(payload) > self.max_resource_bytes:
                self.log.error(
                    "Frame too large to send conn=%s bytes=%s limit=%s",
                    self.connection_id,
                    len(payload),
                    self.max_resource_bytes,
                )
                return False

            RNS.Resource(payload, self.link, advertise=True, auto_compress=False)
            self.log.debug(
                "Sent frame as resource conn=%s bytes=%s",
                self.connection_id,
                len(payload),
            )
            return True
        except OSError as e:
            self.log.warning(
                "Send failed conn=%s bytes=%s err=%s",
                self.connection_id,
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed conn=%s bytes=%s",
                self.connection_id,
                len(payload),
                exc_info=True,
            )
        return False

    def close(self) -> None:
        try:
            self.link.teardown()
        except Exception:
            self.log.debug("Teardown failed conn=%s", self.connection_id, exc_info=True)


def link_id_hex(link: RNS.Link) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return f"link-{id(link):x}"
