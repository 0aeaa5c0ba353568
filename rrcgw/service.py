from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from .auth import TokenVerifier
from .config import GatewayConfig
from .envelope import encode
from .gateway import ChatGateway
from .identity import TomlIdentityStore
from .router import MessageArchive
from .transport import LinkConnection, link_id_hex
from .util import expand_path

_SWEEP_INTERVAL_S = 1.0


class GatewayService:
    """
    Reticulum front end for the chat gateway.

    Owns the Reticulum instance and the inbound destination, wraps each
    established link in a ``LinkConnection`` and forwards packets, concluded
    resources and link closures into ``ChatGateway``.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        store: TomlIdentityStore | None = None,
        archive: MessageArchive | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("rrcgw.service")
        self._shutdown = threading.Event()

        if not config.token_secret:
            raise RuntimeError("token_secret is not set")

        if store is None:
            users_path = expand_path(config.users_path) if config.users_path else None
            store = TomlIdentityStore(users_path)
        self.store = store

        self.verifier = TokenVerifier(
            config.token_secret,
            algorithms=config.token_algorithms,
            issuer=config.token_issuer,
            audience=config.token_audience,
            leeway_s=config.token_leeway_s,
        )
        self.gateway = ChatGateway(config, self.store, self.verifier, archive=archive)
        self.stats = self.gateway.stats

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None
        self._sweep_thread: threading.Thread | None = None

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="rrcgw-announce",
                daemon=True,
            )
            self._announce_thread.start()

        if self.config.connect_timeout_s and self.config.connect_timeout_s > 0:
            self._sweep_thread = threading.Thread(
                target=self._sweep_loop,
                name="rrcgw-connect-sweep",
                daemon=True,
            )
            self._sweep_thread.start()

        self.log.info(
            "Gateway running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy connect_timeout_s=%s username_max_chars=%s max_message_chars=%s recheck_bans_on_send=%s",
            self.config.connect_timeout_s,
            self.config.username_max_chars,
            self.config.max_message_chars,
            self.config.recheck_bans_on_send,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rrcgw", "v": 1, "name": self.config.gateway_name})
            )
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(period):
                break
            self._announce_once()

    def _sweep_loop(self) -> None:
        while not self._shutdown.wait(_SWEEP_INTERVAL_S):
            try:
                closed = self.gateway.sweep_pending()
            except Exception:
                self.log.exception("Connect timeout sweep failed")
                continue
            if closed:
                self.log.info("Closed %s connection(s) that never sent connect", closed)

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        self.gateway.shutdown()
        self.log.info("Gateway stopped\n%s", self.stats.format_stats())

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        conn = LinkConnection(link, max_resource_bytes=self.config.max_resource_bytes)
        self.gateway.on_connect(conn)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(self._resource_concluded)
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks conn=%s: %s", conn.connection_id, e
            )

        self.log.info("Link established conn=%s", conn.connection_id)

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        self.gateway.on_frame(link_id_hex(link), data)

    def _on_close(self, link: RNS.Link) -> None:
        cid = link_id_hex(link)
        self.gateway.on_disconnect(cid)
        self.log.info("Link closed conn=%s", cid)

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        link = resource.link
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > self.config.max_resource_bytes:
            self.log.warning(
                "Rejecting resource (too large: %s > %s) conn=%s",
                size,
                self.config.max_resource_bytes,
                link_id_hex(link),
            )
            return False
        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = resource.link
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed conn=%s status=%s",
                link_id_hex(link),
                resource.status,
            )
            return

        try:
            payload = resource.data.read() if hasattr(resource.data, "read") else resource.data
            if isinstance(payload, bytearray):
                payload = bytes(payload)
        except Exception as e:
            self.log.error("Failed to read resource data conn=%s: %s", link_id_hex(link), e)
            return

        self.gateway.on_frame(link_id_hex(link), payload)
