"""Reticulum glue, exercised with stand-in links and resources."""

import io

import pytest
import RNS

from conftest import SECRET, frame, make_token

from rrcgw.config import GatewayConfig
from rrcgw.service import GatewayService
from rrcgw.transport import LinkConnection, link_id_hex


class FakeLink:
    MDU = 64

    def __init__(self, link_id: bytes) -> None:
        self.link_id = link_id
        self.callbacks: dict[str, object] = {}
        self.torn_down = False

    def set_packet_callback(self, cb) -> None:
        self.callbacks["packet"] = cb

    def set_link_closed_callback(self, cb) -> None:
        self.callbacks["closed"] = cb

    def set_resource_strategy(self, strategy) -> None:
        self.callbacks["strategy"] = strategy

    def set_resource_callback(self, cb) -> None:
        self.callbacks["resource"] = cb

    def set_resource_concluded_callback(self, cb) -> None:
        self.callbacks["concluded"] = cb

    def teardown(self) -> None:
        self.torn_down = True


class FakeResource:
    def __init__(self, link, data: bytes, status=None) -> None:
        self.link = link
        self.data = io.BytesIO(data)
        self.total_size = len(data)
        self.status = RNS.Resource.COMPLETE if status is None else status


class SentPackets:
    def __init__(self) -> None:
        self.packets: list[bytes] = []
        self.resources: list[bytes] = []

    def packet(self, link, payload):
        outer = self

        class _Packet:
            def send(self_inner):
                outer.packets.append(payload)

        return _Packet()

    def resource(self, payload, link, **kwargs):
        self.resources.append(payload)


def _patch_rns(monkeypatch) -> SentPackets:
    sent = SentPackets()
    monkeypatch.setattr(RNS, "Packet", sent.packet)
    monkeypatch.setattr(
        RNS.Resource, "__init__", lambda self, payload, link, **kw: sent.resource(payload, link, **kw)
    )
    return sent


def _service(store, **overrides) -> GatewayService:
    cfg = GatewayConfig(token_secret=SECRET, max_resource_bytes=4096, **overrides)
    return GatewayService(cfg, store=store)


def test_link_id_hex() -> None:
    assert link_id_hex(FakeLink(b"\x01\x02")) == "0102"


def test_link_connection_sends_small_frames_as_packets(monkeypatch) -> None:
    sent = _patch_rns(monkeypatch)
    conn = LinkConnection(FakeLink(b"\xaa"), max_resource_bytes=1024)

    assert conn.send(b"x" * 10)
    assert sent.packets == [b"x" * 10]
    assert sent.resources == []


def test_link_connection_sends_large_frames_as_resources(monkeypatch) -> None:
    sent = _patch_rns(monkeypatch)
    conn = LinkConnection(FakeLink(b"\xaa"), max_resource_bytes=1024)

    assert conn.send(b"y" * 500)
    assert sent.resources == [b"y" * 500]

    assert not conn.send(b"z" * 2000)


def test_link_connection_close_tears_down() -> None:
    link = FakeLink(b"\xaa")
    LinkConnection(link, max_resource_bytes=1024).close()
    assert link.torn_down


def test_service_requires_token_secret(store) -> None:
    with pytest.raises(RuntimeError):
        GatewayService(GatewayConfig(), store=store)


def test_link_callbacks_drive_the_gateway(store, monkeypatch) -> None:
    sent = _patch_rns(monkeypatch)
    svc = _service(store)
    link = FakeLink(b"\x10\x20")

    svc._on_link(link)
    assert link.callbacks["strategy"] == RNS.Link.ACCEPT_APP
    assert svc.gateway.pending_count() == 1

    connect = frame("connect", {"token": make_token("u-member"), "userId": "u-member"})
    # The token does not fit a 64 byte MDU, so clients send it as a resource.
    assert svc._resource_advertised(FakeResource(link, connect)) is True
    svc._resource_concluded(FakeResource(link, connect))

    assert svc.gateway.registry.get("1020") is not None
    assert sent.packets or sent.resources

    link.callbacks["closed"](link)
    assert svc.gateway.registry.count() == 0


def test_oversized_and_failed_resources_are_ignored(store, monkeypatch) -> None:
    _patch_rns(monkeypatch)
    svc = _service(store)
    link = FakeLink(b"\x30")
    svc._on_link(link)

    assert svc._resource_advertised(FakeResource(link, b"x" * 5000)) is False

    svc._resource_concluded(FakeResource(link, b"garbage", status=RNS.Resource.FAILED))
    assert svc.stats.get("frames_in") == 0


def test_packet_callback_forwards_frames(store, monkeypatch) -> None:
    sent = _patch_rns(monkeypatch)
    svc = _service(store)
    link = FakeLink(b"\x40")
    svc._on_link(link)

    link.callbacks["packet"](frame("sendMessage", {"text": "hi"}), None)

    assert svc.stats.get("frames_in") == 1
    assert sent.packets or sent.resources


def test_stop_closes_links_and_is_idempotent(store, monkeypatch) -> None:
    _patch_rns(monkeypatch)
    svc = _service(store)
    link = FakeLink(b"\x50")
    svc._on_link(link)

    svc.stop()
    svc.stop()

    assert link.torn_down
